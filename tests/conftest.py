import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from media_extraction.adapters.local_workspace_gateway import LocalWorkspaceGateway
from media_extraction.application.cancellation import CancellationToken
from media_extraction.application.extraction_engine import ExtractionEngine, ExtractionEngineConfig
from media_extraction.application.job_runner_use_cases import JobRunnerConfig, RunExtractionJobUseCase
from media_extraction.application.publisher import ArtifactPublisher, PublisherConfig
from media_extraction.domain.errors import CutUnsupportedError, SourceUnavailableError
from media_extraction.domain.models import PixelBox, VideoMetadata

SOURCE_URL = "https://media.test/videos/source.mp4"


class RecordingProgressReporter:
    """通知内容を記録するだけの ProgressReporter です。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.phases: List[tuple] = []
        self.progress: List[tuple] = []

    def report_phase(self, phase: str, message: str) -> None:
        with self._lock:
            self.phases.append((phase, message))

    def report_progress(self, current: int, total: int, message: str) -> None:
        with self._lock:
            self.progress.append((current, total, message))

    def phase_names(self) -> List[str]:
        return [phase for phase, _ in self.phases]


class FakeSourceFetcher:
    """URLごとに成功・失敗を決められる取得アダプターです。"""

    def __init__(self, unreachable: Sequence[str] = ()) -> None:
        self._lock = threading.Lock()
        self.unreachable = set(unreachable)
        self.fetched: List[str] = []

    def fetch(self, source_url: str, destination_dir: Path, file_stem: str, cancel_token: CancellationToken) -> Path:
        cancel_token.raise_if_cancelled()
        if source_url in self.unreachable:
            raise SourceUnavailableError(f"source returned HTTP 404: {source_url}")

        destination_dir.mkdir(parents=True, exist_ok=True)
        suffix = Path(source_url).suffix or ".mp4"
        local_path = destination_dir / f"{file_stem}{suffix}"
        local_path.write_bytes(b"media:" + source_url.encode("utf-8"))

        with self._lock:
            self.fetched.append(source_url)

        return local_path


class FakeMediaTool:
    """ffmpeg の代わりに小さなファイルを書き出す変換ツールです。"""

    def __init__(
        self,
        metadata: Optional[VideoMetadata] = None,
        probe_error: Optional[Exception] = None,
        delay_sec: float = 0.0,
        reject_stream_copy: bool = False,
    ) -> None:
        self.metadata = metadata if metadata is not None else VideoMetadata(duration_seconds=10.0, width=640, height=360)
        self.probe_error = probe_error
        self.delay_sec = delay_sec
        self.reject_stream_copy = reject_stream_copy
        self.frame_errors: Dict[float, Exception] = {}
        self.silent_timestamps = set()
        self.unsupported_codecs = set()

        self._lock = threading.Lock()
        self._active = 0
        self.max_active = 0
        self.frame_calls: List[tuple] = []
        self.audio_calls: List[str] = []
        self.cut_calls: List[tuple] = []
        self.mix_calls: List[List[Path]] = []

    def probe(self, input_path: Path, cancel_token: CancellationToken) -> VideoMetadata:
        if self.probe_error is not None:
            raise self.probe_error

        return self.metadata

    def extract_frame(
        self,
        input_path: Path,
        timestamp: float,
        output_path: Path,
        cancel_token: CancellationToken,
        crop: Optional[PixelBox] = None,
    ) -> Path:
        with self._busy():
            with self._lock:
                self.frame_calls.append((timestamp, crop))

            if timestamp in self.frame_errors:
                raise self.frame_errors[timestamp]

            # 範囲外のシークでは ffmpeg は正常終了しても何も書き出さない
            if timestamp in self.silent_timestamps:
                return output_path

            output_path.write_bytes(b"jpeg")
            return output_path

    def extract_audio(self, input_path: Path, codec: str, output_path: Path, cancel_token: CancellationToken) -> Path:
        with self._busy():
            with self._lock:
                self.audio_calls.append(codec)
            output_path.write_bytes(b"audio")
            return output_path

    def cut_segment(
        self,
        input_path: Path,
        start_time: float,
        end_time: float,
        output_path: Path,
        cancel_token: CancellationToken,
    ) -> Path:
        with self._busy():
            if self.reject_stream_copy:
                raise CutUnsupportedError("stream copy is not possible for this media")

            with self._lock:
                self.cut_calls.append((start_time, end_time))
            output_path.write_bytes(b"clip")
            return output_path

    def mix_audio(self, input_paths: Sequence[Path], output_path: Path, cancel_token: CancellationToken) -> Path:
        with self._busy():
            with self._lock:
                self.mix_calls.append(list(input_paths))
            output_path.write_bytes(b"mix")
            return output_path

    def supports_audio_codec(self, codec: str, cancel_token: CancellationToken) -> bool:
        return codec not in self.unsupported_codecs

    def _busy(self):
        tool = self

        class _Busy:
            def __enter__(self):
                with tool._lock:
                    tool._active += 1
                    tool.max_active = max(tool.max_active, tool._active)
                if tool.delay_sec > 0:
                    time.sleep(tool.delay_sec)

            def __exit__(self, exc_type, exc, tb):
                with tool._lock:
                    tool._active -= 1
                return False

        return _Busy()


class FakeObjectStorage:
    """アップロード内容をメモリに保持するストレージです。"""

    def __init__(self, failing_names: Sequence[str] = ()) -> None:
        self._lock = threading.Lock()
        self.failing_names = set(failing_names)
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, Optional[str]] = {}

    def upload_file(self, local_path: Path, bucket: str, key: str, content_type: Optional[str] = None) -> str:
        if local_path.name in self.failing_names:
            raise ConnectionError(f"connection reset while uploading {key}")

        with self._lock:
            self.objects[f"{bucket}/{key}"] = local_path.read_bytes()
            self.content_types[f"{bucket}/{key}"] = content_type

        return self.locator_for(bucket, key)

    def locator_for(self, bucket: str, key: str) -> str:
        return f"https://cdn.test/{bucket}/{key}"


@pytest.fixture
def reporter() -> RecordingProgressReporter:
    return RecordingProgressReporter()


@pytest.fixture
def source_fetcher() -> FakeSourceFetcher:
    return FakeSourceFetcher()


@pytest.fixture
def media_tool() -> FakeMediaTool:
    return FakeMediaTool()


@pytest.fixture
def object_storage() -> FakeObjectStorage:
    return FakeObjectStorage()


@pytest.fixture
def work_dir(tmp_path) -> Path:
    return tmp_path / "work"


@pytest.fixture
def workspace_gateway(work_dir) -> LocalWorkspaceGateway:
    return LocalWorkspaceGateway(base_dir=work_dir)


@pytest.fixture
def build_use_case(workspace_gateway, source_fetcher, media_tool, object_storage, reporter):
    """差し替えたい部品だけ指定してジョブ実行ユースケースを組み立てます。"""

    def build(
        workspace=None,
        fetcher=None,
        tool=None,
        storage=None,
        max_workers: int = 3,
        max_retries: int = 0,
    ) -> RunExtractionJobUseCase:
        fetcher = fetcher or source_fetcher
        tool = tool or media_tool
        storage = storage or object_storage

        return RunExtractionJobUseCase(
            workspace_gateway=workspace or workspace_gateway,
            source_fetcher=fetcher,
            media_tool=tool,
            extraction_engine=ExtractionEngine(
                media_tool=tool,
                source_fetcher=fetcher,
                progress_reporter=reporter,
                config=ExtractionEngineConfig(max_workers=max_workers),
            ),
            publisher=ArtifactPublisher(
                object_storage=storage,
                config=PublisherConfig(bucket="artifacts", key_prefix="extractions", max_workers=2),
                progress_reporter=reporter,
            ),
            progress_reporter=reporter,
            config=JobRunnerConfig(max_extraction_retries=max_retries),
        )

    return build
