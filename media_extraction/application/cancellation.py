import threading
from typing import Optional

from media_extraction.domain.errors import JobCancelledError


class CancellationToken:
    """ジョブのキャンセル要求をスレッド間で共有します。"""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """キャンセルを要求します。2回目以降は無視します。"""

        if self._event.is_set() == False:
            self._reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        """キャンセル済みなら JobCancelledError を送出します。"""

        if self._event.is_set():
            raise JobCancelledError(self._reason or "cancelled")

    def wait(self, timeout_sec: float) -> bool:
        """キャンセルされるか timeout_sec 経過するまで待ちます。"""

        return self._event.wait(timeout_sec)
