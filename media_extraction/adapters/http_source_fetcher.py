import threading
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Optional
from urllib.parse import unquote, urlparse

import requests
from urllib3.exceptions import ReadTimeoutError

from media_extraction.application.cancellation import CancellationToken
from media_extraction.application.ports import SourceFetcherPort
from media_extraction.domain.errors import (
    ExtractionError,
    InvalidRequestError,
    OperationTimeoutError,
    SourceUnavailableError,
    TransferError,
)

DEFAULT_SUFFIX = ".mp4"


@dataclass(frozen=True)
class SourceFetcherConfig:
    """ダウンロードの設定です。"""

    connect_timeout_sec: float = 10.0
    read_timeout_sec: float = 60.0
    total_timeout_sec: float = 1800.0
    chunk_size: int = 1024 * 1024


class HttpSourceFetcher(SourceFetcherPort):
    """HTTP(S) のメディアを分割受信しながらディスクへ保存するアダプターです。"""

    def __init__(
        self,
        config: SourceFetcherConfig = SourceFetcherConfig(),
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self._config = config
        self._session_factory = session_factory
        # ステムは複数スレッドで並列に取得するため Session はスレッドごとに持つ
        self._local = threading.local()

    def fetch(
        self,
        source_url: str,
        destination_dir: Path,
        file_stem: str,
        cancel_token: CancellationToken,
    ) -> Path:
        """本体をメモリに溜めずに保存し、保存先のパスを返します。"""

        suffix = self._validate_url(source_url)
        cancel_token.raise_if_cancelled()

        destination_dir.mkdir(parents=True, exist_ok=True)
        local_path = destination_dir / f"{file_stem}{suffix}"
        part_path = destination_dir / f"{file_stem}{suffix}.part"

        try:
            self._download(source_url, part_path, cancel_token)
            part_path.replace(local_path)
        except BaseException:
            # 途中まで書いたファイルは残さない
            if part_path.exists():
                part_path.unlink()
            raise

        return local_path

    def _download(self, source_url: str, part_path: Path, cancel_token: CancellationToken) -> None:
        deadline = time.monotonic() + self._config.total_timeout_sec

        try:
            response = self._session().get(
                source_url,
                stream=True,
                timeout=(self._config.connect_timeout_sec, self._config.read_timeout_sec),
            )
        except requests.exceptions.Timeout as ex:
            raise OperationTimeoutError(f"timed out connecting to {source_url}") from ex
        except requests.exceptions.RequestException as ex:
            raise SourceUnavailableError(f"failed to reach {source_url}: {ex}") from ex

        with response:
            if response.status_code < 200 or response.status_code >= 300:
                raise SourceUnavailableError(f"source returned HTTP {response.status_code}: {source_url}")

            expected_size = self._content_length(response)
            received = 0

            try:
                with open(part_path, "wb") as handle:
                    for chunk in response.iter_content(chunk_size=self._config.chunk_size):
                        cancel_token.raise_if_cancelled()
                        if time.monotonic() > deadline:
                            raise OperationTimeoutError(
                                f"download exceeded {self._config.total_timeout_sec}s: {source_url}"
                            )

                        if chunk:
                            handle.write(chunk)
                            received += len(chunk)
            except ExtractionError:
                raise
            except requests.exceptions.Timeout as ex:
                raise OperationTimeoutError(f"read timed out while downloading {source_url}") from ex
            except requests.exceptions.RequestException as ex:
                # 本文受信中の読み取りタイムアウトは ConnectionError に包まれて届く
                if _is_read_timeout(ex):
                    raise OperationTimeoutError(f"read timed out after {received} bytes: {source_url}") from ex
                raise TransferError(f"stream interrupted after {received} bytes: {ex}") from ex
            except OSError as ex:
                raise TransferError(f"failed to write {part_path.name}: {ex}") from ex

        if expected_size is not None and received < expected_size:
            raise TransferError(f"stream ended early: received {received} of {expected_size} bytes")

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._session_factory()
            self._local.session = session

        return session

    @staticmethod
    def _content_length(response: requests.Response) -> Optional[int]:
        value = response.headers.get("Content-Length")
        # 圧縮転送時は Content-Length と受信バイト数が一致しない
        if value is None or response.headers.get("Content-Encoding"):
            return None

        try:
            return int(value)
        except ValueError:
            return None

    @staticmethod
    def _validate_url(source_url: Optional[str]) -> str:
        """ネットワークに触れる前にURLを検証し、保存時の拡張子を返します。"""

        if source_url is None or str(source_url).strip() == "":
            raise InvalidRequestError("source url is required")

        parsed = urlparse(str(source_url).strip())
        if parsed.scheme not in ("http", "https") or parsed.netloc == "":
            raise InvalidRequestError(f"source url must be an absolute http(s) url: {source_url}")

        suffix = PurePosixPath(unquote(parsed.path)).suffix.lower()
        if suffix == "" or len(suffix) > 8 or suffix[1:].isalnum() == False:
            return DEFAULT_SUFFIX

        return suffix


def _is_read_timeout(error: requests.exceptions.RequestException) -> bool:
    return any(isinstance(arg, ReadTimeoutError) for arg in error.args)
