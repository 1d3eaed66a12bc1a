import json
import os
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from media_extraction.adapters.console_progress_reporter import ConsoleProgressReporter
from media_extraction.adapters.ffmpeg_media_tool import FfmpegConfig, FfmpegMediaTool
from media_extraction.adapters.http_source_fetcher import HttpSourceFetcher, SourceFetcherConfig
from media_extraction.adapters.local_workspace_gateway import LocalWorkspaceGateway
from media_extraction.adapters.minio_object_storage import MinioObjectStorageAdapter
from media_extraction.application.cancellation import CancellationToken
from media_extraction.application.extraction_engine import ExtractionEngine, ExtractionEngineConfig
from media_extraction.application.job_runner_use_cases import JobRunnerConfig, RunExtractionJobUseCase
from media_extraction.application.job_submission import parse_job_document
from media_extraction.application.publisher import ArtifactPublisher, PublisherConfig
from media_extraction.domain.errors import ExtractionError, InvalidRequestError
from media_extraction.domain.job_models import ExtractionJob, JobOutcome, JobState


class JobThread:
    """ジョブを別スレッドで実行し、メインスレッドで Ctrl-C を受けられるようにします。"""

    def __init__(self, use_case: RunExtractionJobUseCase, job: ExtractionJob) -> None:
        self.cancel_token = CancellationToken()
        self._use_case = use_case
        self._job = job
        self._outcome: Optional[JobOutcome] = None
        self._error: Optional[BaseException] = None
        self._thread = threading.Thread(target=self._run, name=f"job-{job.job_id}", daemon=True)

    def _run(self) -> None:
        try:
            self._outcome = self._use_case.execute(self._job, self.cancel_token)
        except BaseException as ex:
            self._error = ex

    def start(self) -> None:
        self._thread.start()

    def wait(self, poll_interval_sec: float = 0.5) -> JobOutcome:
        """終了を待ちます。例外はメインスレッドで再送出します。"""

        while self._thread.is_alive():
            self._thread.join(poll_interval_sec)

        if self._error is not None:
            raise self._error

        return self._outcome


def _print_ffmpeg_codecs() -> int:
    """ffmpeg が出力できる音声エンコーダをJSONで表示します。"""

    media_tool = FfmpegMediaTool(FfmpegConfig(ffmpeg_path=os.getenv("FFMPEG_BINARY")))
    try:
        encoders = media_tool.available_audio_encoders(CancellationToken())
    except ExtractionError as ex:
        print("[ERROR] failed to list ffmpeg codecs: {0}".format(ex))
        return 1

    print(json.dumps({"audioEncoders": sorted(encoders)}, ensure_ascii=False))
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """ワーカーのエントリポイントです。引数のジョブJSONを順に実行します。"""

    job_paths = list(sys.argv[1:] if argv is None else argv)
    if len(job_paths) == 0:
        print("usage: media-extraction-worker JOB_JSON [JOB_JSON ...] | --ffmpeg-codecs", file=sys.stderr)
        return 2

    if job_paths == ["--ffmpeg-codecs"]:
        return _print_ffmpeg_codecs()

    minio_endpoint = _get_required_env("MINIO_ENDPOINT")
    minio_access_key = _get_required_env("MINIO_ACCESS_KEY")
    minio_secret_key = _get_required_env("MINIO_SECRET_KEY")
    minio_secure = _get_env_bool("MINIO_SECURE", False)
    output_bucket = _get_required_env("JOB_OUTPUT_BUCKET")

    object_storage = MinioObjectStorageAdapter(
        endpoint=minio_endpoint,
        access_key=minio_access_key,
        secret_key=minio_secret_key,
        secure=minio_secure,
        public_base_url=os.getenv("STORAGE_PUBLIC_BASE_URL"),
    )
    source_fetcher = HttpSourceFetcher(
        SourceFetcherConfig(
            connect_timeout_sec=_get_env_float("SOURCE_CONNECT_TIMEOUT_SEC", 10.0),
            read_timeout_sec=_get_env_float("SOURCE_READ_TIMEOUT_SEC", 60.0),
            total_timeout_sec=_get_env_float("SOURCE_TOTAL_TIMEOUT_SEC", 1800.0),
        )
    )
    media_tool = FfmpegMediaTool(
        FfmpegConfig(
            ffmpeg_path=os.getenv("FFMPEG_BINARY"),
            ffprobe_path=os.getenv("FFPROBE_BINARY"),
            timeout_sec=_get_env_float("TOOL_TIMEOUT_SEC", 600.0),
        )
    )
    workspace_gateway = LocalWorkspaceGateway(base_dir=Path(os.getenv("WORK_DIR", "work")))

    engine_config = ExtractionEngineConfig(
        max_workers=_get_env_int("EXTRACTION_MAX_WORKERS", 3),
        stem_download_workers=_get_env_int("STEM_DOWNLOAD_MAX_WORKERS", 3),
    )
    publisher_config = PublisherConfig(
        bucket=output_bucket,
        key_prefix=os.getenv("JOB_OUTPUT_PREFIX", "extractions"),
        max_workers=_get_env_int("UPLOAD_MAX_WORKERS", 4),
    )
    runner_config = JobRunnerConfig(max_extraction_retries=_get_env_int("EXTRACTION_MAX_RETRIES", 0))

    exit_code = 0

    for job_path in job_paths:
        try:
            job = _load_job(Path(job_path))
        except InvalidRequestError as ex:
            print("[ERROR] invalid job file {0}: {1}".format(job_path, ex))
            exit_code = 1
            continue

        # 実行中ジョブごとに ProgressReporter を作る（job_id を出力に含めるため）
        progress_reporter = ConsoleProgressReporter(job_id=job.job_id)
        run_job_use_case = RunExtractionJobUseCase(
            workspace_gateway=workspace_gateway,
            source_fetcher=source_fetcher,
            media_tool=media_tool,
            extraction_engine=ExtractionEngine(
                media_tool=media_tool,
                source_fetcher=source_fetcher,
                progress_reporter=progress_reporter,
                config=engine_config,
            ),
            publisher=ArtifactPublisher(
                object_storage=object_storage,
                config=publisher_config,
                progress_reporter=progress_reporter,
            ),
            progress_reporter=progress_reporter,
            config=runner_config,
        )

        print("[INFO] start job_id={0} source={1}".format(job.job_id, job.source_url))
        job_thread = JobThread(run_job_use_case, job)
        job_thread.start()

        try:
            outcome = job_thread.wait()
        except KeyboardInterrupt:
            print("[INFO] cancelling job_id={0}...".format(job.job_id))
            job_thread.cancel_token.cancel("interrupted by user")
            outcome = job_thread.wait()
            print(json.dumps(outcome.to_dict(), ensure_ascii=False))
            return 130
        except Exception as ex:
            print("[ERROR] job failed job_id={0} error={1}".format(job.job_id, ex))
            exit_code = 1
            continue

        print(json.dumps(outcome.to_dict(), ensure_ascii=False))
        if outcome.state == JobState.COMPLETED:
            print("[INFO] completed job_id={0} partial={1}".format(job.job_id, outcome.is_partial))
        else:
            print("[WARN] failed job_id={0} failures={1}".format(job.job_id, len(outcome.failures)))
            exit_code = 1

    return exit_code


def _load_job(path: Path) -> ExtractionJob:
    """ジョブJSONを読み込みます。"""

    try:
        with open(path, "r", encoding="utf-8") as handle:
            document = json.load(handle)
    except (OSError, ValueError) as ex:
        raise InvalidRequestError("cannot read job document: {0}".format(ex)) from ex

    return parse_job_document(document)


def _get_required_env(name: str) -> str:
    """必須環境変数を取得します。"""

    value = os.getenv(name)
    if value is None or value.strip() == "":
        raise RuntimeError("environment variable is required: {0}".format(name))

    return value


def _get_env_bool(name: str, default_value: bool) -> bool:
    """真偽値環境変数を取得します。"""

    value = os.getenv(name)
    if value is None:
        return default_value

    normalized = value.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True

    if normalized in ("0", "false", "no", "off"):
        return False

    raise RuntimeError("invalid bool environment variable: {0}={1}".format(name, value))


def _get_env_float(name: str, default_value: float) -> float:
    """浮動小数の環境変数を取得します。"""

    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default_value

    return float(value)


def _get_env_int(name: str, default_value: int) -> int:
    """整数の環境変数を取得します。"""

    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default_value

    parsed = int(value)
    if parsed < 0:
        raise RuntimeError("environment variable must not be negative: {0}={1}".format(name, value))

    return parsed


if __name__ == "__main__":
    raise SystemExit(main())
