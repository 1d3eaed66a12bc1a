from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from media_extraction.application.cancellation import CancellationToken
from media_extraction.application.extraction_engine import ExtractionEngine
from media_extraction.application.ports import (
    MediaToolPort,
    ProgressReporterPort,
    SourceFetcherPort,
    WorkspacePort,
)
from media_extraction.application.publisher import ArtifactPublisher
from media_extraction.domain.errors import ExtractionError, JobCancelledError, error_kind_of
from media_extraction.domain.job_models import ALLOWED_TRANSITIONS, ExtractionJob, JobOutcome, JobState
from media_extraction.domain.models import (
    Artifact,
    ExtractionFailure,
    FailureRecord,
    PlannedRequest,
    PublishedArtifact,
    VideoMetadata,
    Workspace,
)
from media_extraction.domain.naming import NamingContext

STAGE_NAMES = {
    JobState.ACQUIRING: "acquire",
    JobState.EXTRACTING: "extract",
    JobState.PUBLISHING: "publish",
}


@dataclass(frozen=True)
class JobRunnerConfig:
    """ジョブ実行の設定です。"""

    # 一時的な失敗だけを対象に、抽出フェーズ内で再実行する回数
    max_extraction_retries: int = 0
    source_file_stem: str = "source"


class _JobRun:
    """1ジョブ分の状態遷移と失敗の記録を保持します。"""

    def __init__(self, job: ExtractionJob) -> None:
        self.job = job
        self.state = JobState.CREATED
        self.history: List[JobState] = [JobState.CREATED]
        self.failures: List[FailureRecord] = []

    def transition(self, next_state: JobState) -> None:
        if next_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                "invalid job state transition: {0} -> {1}".format(self.state.value, next_state.value)
            )

        self.state = next_state
        self.history.append(next_state)

    def fail(self, failure: Optional[FailureRecord] = None) -> JobOutcome:
        if failure is not None:
            self.failures.append(failure)

        self.transition(JobState.FAILED)
        return self.outcome(())

    def outcome(self, published: Sequence[PublishedArtifact]) -> JobOutcome:
        return JobOutcome(
            job_id=self.job.job_id,
            state=self.state,
            published=tuple(sorted(published, key=lambda item: item.object_key)),
            failures=tuple(self.failures),
            state_history=tuple(self.history),
        )


class RunExtractionJobUseCase:
    """取得 → 抽出 → 公開 → 解放 の流れで1件のジョブを実行するユースケースです。"""

    def __init__(
        self,
        workspace_gateway: WorkspacePort,
        source_fetcher: SourceFetcherPort,
        media_tool: MediaToolPort,
        extraction_engine: ExtractionEngine,
        publisher: ArtifactPublisher,
        progress_reporter: ProgressReporterPort,
        config: JobRunnerConfig = JobRunnerConfig(),
    ) -> None:
        self._workspace_gateway = workspace_gateway
        self._source_fetcher = source_fetcher
        self._media_tool = media_tool
        self._extraction_engine = extraction_engine
        self._publisher = publisher
        self._progress_reporter = progress_reporter
        self._config = config

    def execute(self, job: ExtractionJob, cancel_token: Optional[CancellationToken] = None) -> JobOutcome:
        """ジョブを1件実行し、終端状態の結果を返します。"""

        if cancel_token is None:
            cancel_token = CancellationToken()

        run = _JobRun(job)
        workspace: Optional[Workspace] = None

        try:
            run.transition(JobState.ACQUIRING)
            try:
                self._progress_reporter.report_phase("acquire", f"作業領域を確保します。job_id={job.job_id}")
                workspace = self._workspace_gateway.acquire(job.job_id)

                self._progress_reporter.report_phase("download", f"入力メディアを取得します: {job.source_url}")
                source_path = self._source_fetcher.fetch(
                    job.source_url,
                    workspace.source_dir,
                    self._config.source_file_stem,
                    cancel_token,
                )
            except JobCancelledError:
                raise
            except ExtractionError as ex:
                # 取得段階の失敗はジョブ全体の失敗とし、抽出は行わない
                return run.fail(self._failure(job.job_id, "acquire", ex))

            metadata = self._probe(source_path, cancel_token)
            planned_requests = job.planned_requests()
            naming_context = NamingContext.for_job(
                metadata.duration_seconds if metadata is not None else None,
                job.requests,
                source_path.suffix,
            )

            run.transition(JobState.EXTRACTING)
            artifacts, extraction_failures = self._extract_with_retries(
                source_path,
                planned_requests,
                workspace,
                metadata,
                naming_context,
                cancel_token,
            )
            for failure in extraction_failures:
                run.failures.append(self._failure(failure.planned.request_id, "extract", failure.error))

            cancel_token.raise_if_cancelled()
            if len(artifacts) == 0:
                self._progress_reporter.report_phase("failed", "成果物が1件も生成されませんでした。")
                return run.fail()

            run.transition(JobState.PUBLISHING)
            publish_report = self._publisher.publish(job.job_id, artifacts, cancel_token)
            run.failures.extend(publish_report.failures)

            cancel_token.raise_if_cancelled()
            if len(publish_report.published) == 0:
                self._progress_reporter.report_phase("failed", "公開できた成果物がありませんでした。")
                return run.fail()

            run.transition(JobState.COMPLETED)
            self._progress_reporter.report_phase(
                "done",
                f"ジョブが完了しました。published={len(publish_report.published)} failures={len(run.failures)}",
            )
            return run.outcome(publish_report.published)

        except JobCancelledError as ex:
            self._progress_reporter.report_phase("cancelled", f"ジョブはキャンセルされました: {ex}")
            return run.fail(self._failure(job.job_id, STAGE_NAMES.get(run.state, run.state.value), ex))

        except Exception:
            if run.state.is_terminal == False:
                run.transition(JobState.FAILED)
            raise

        finally:
            if workspace is not None:
                self._release(workspace)

    def _probe(self, source_path: Path, cancel_token: CancellationToken) -> Optional[VideoMetadata]:
        """メタデータを1回だけ取得します。失敗しても致命的にはしません。"""

        self._progress_reporter.report_phase("probe", "メディア情報を取得します。")
        try:
            return self._media_tool.probe(source_path, cancel_token)
        except JobCancelledError:
            raise
        except ExtractionError as ex:
            self._progress_reporter.report_phase("probe_warn", "メディア情報を取得できませんでした: {0}".format(ex))
            return None

    def _extract_with_retries(
        self,
        source_path: Path,
        planned_requests: List[PlannedRequest],
        workspace: Workspace,
        metadata: Optional[VideoMetadata],
        naming_context: NamingContext,
        cancel_token: CancellationToken,
    ) -> Tuple[List[Artifact], List[ExtractionFailure]]:
        artifacts: List[Artifact] = []
        failures: List[ExtractionFailure] = []
        pending = planned_requests

        for attempt in range(self._config.max_extraction_retries + 1):
            report = self._extraction_engine.run(
                source_path,
                pending,
                workspace,
                metadata,
                cancel_token,
                naming_context=naming_context,
            )
            artifacts.extend(report.artifacts)

            retryable = [failure for failure in report.failures if failure.retryable]
            failures.extend(failure for failure in report.failures if failure.retryable == False)

            last_attempt = attempt >= self._config.max_extraction_retries
            if len(retryable) == 0 or last_attempt or cancel_token.is_cancelled:
                failures.extend(retryable)
                break

            self._progress_reporter.report_phase(
                "retry",
                f"一時的な失敗 {len(retryable)} 件を再実行します。attempt={attempt + 2}",
            )
            pending = [failure.planned for failure in retryable]

        return artifacts, failures

    def _release(self, workspace: Workspace) -> None:
        try:
            self._progress_reporter.report_phase("cleanup", "作業領域を削除します。")
            self._workspace_gateway.release(workspace)
        except Exception as ex:
            # cleanup失敗は非致命として扱う
            self._progress_reporter.report_phase("cleanup_warn", "作業領域の削除に失敗しました: {0}".format(ex))

    @staticmethod
    def _failure(subject_id: str, stage: str, error: BaseException) -> FailureRecord:
        return FailureRecord(
            subject_id=subject_id,
            stage=stage,
            error_kind=error_kind_of(error),
            message=str(error),
        )
