import threading

from media_extraction.application.ports import ProgressReporterPort


class ConsoleProgressReporter(ProgressReporterPort):
    """コンソール出力で進捗表示するアダプターです。"""

    def __init__(self, job_id: str = None) -> None:
        self._job_id = job_id
        # ワーカープールの複数スレッドから呼ばれるため1行ずつ出力する
        self._lock = threading.Lock()

    def report_phase(self, phase: str, message: str) -> None:
        """フェーズ情報を出力します。"""

        self._emit(f"[PHASE] {self._prefix()}{phase}: {message}")

    def report_progress(self, current: int, total: int, message: str) -> None:
        """進捗を出力します。"""

        safe_total = total if total > 0 else 1
        percent = (current / safe_total) * 100.0
        self._emit(f"[PROGRESS] {self._prefix()}{percent:.1f}% ({current}/{safe_total}) {message}")

    def _prefix(self) -> str:
        if self._job_id is None:
            return ""

        return f"job={self._job_id} "

    def _emit(self, line: str) -> None:
        with self._lock:
            print(line, flush=True)
