import mimetypes
from dataclasses import dataclass
from typing import List, Optional, Sequence, Set

from media_extraction.application.cancellation import CancellationToken
from media_extraction.application.ports import ObjectStoragePort, ProgressReporterPort
from media_extraction.application.task_pool import BoundedTaskPool, SettledTask
from media_extraction.domain.errors import ExtractionError, StorageError, error_kind_of
from media_extraction.domain.models import (
    Artifact,
    ArtifactKind,
    FailureRecord,
    PublishedArtifact,
    PublishReport,
)

# 成果物の種類ごとの保存先名前空間
NAMESPACES = {
    ArtifactKind.FRAME: "frames",
    ArtifactKind.SAMPLE: "frames",
    ArtifactKind.SHOT: "frames",
    ArtifactKind.CROP: "frames",
    ArtifactKind.AUDIO: "audio",
    ArtifactKind.MIX: "audio",
    ArtifactKind.CLIP: "clips",
}


@dataclass(frozen=True)
class PublisherConfig:
    """公開先の設定です。構築時に明示的に渡します。"""

    bucket: str
    key_prefix: str = "extractions"
    max_workers: int = 4


def object_key_for(key_prefix: str, job_id: str, artifact: Artifact) -> str:
    """論理名と種類から保存先キーを決めます。同じ入力なら常に同じキーです。"""

    parts = [key_prefix.strip("/"), job_id, NAMESPACES[artifact.kind], artifact.name]
    return "/".join(part for part in parts if part != "")


def content_type_for(artifact: Artifact) -> Optional[str]:
    content_type, _ = mimetypes.guess_type(artifact.name)
    return content_type


class ArtifactPublisher:
    """ローカルの成果物をストレージへアップロードし、ロケータを返します。"""

    def __init__(
        self,
        object_storage: ObjectStoragePort,
        config: PublisherConfig,
        progress_reporter: ProgressReporterPort,
    ) -> None:
        self._object_storage = object_storage
        self._config = config
        self._progress_reporter = progress_reporter
        self._pool = BoundedTaskPool(max_workers=config.max_workers, name="publish")

    def publish(
        self,
        job_id: str,
        artifacts: Sequence[Artifact],
        cancel_token: CancellationToken,
    ) -> PublishReport:
        """成果物を並列にアップロードします。失敗は成果物ごとに記録します。"""

        report = PublishReport()
        unique_artifacts: List[Artifact] = []
        seen_names: Set[str] = set()

        for artifact in artifacts:
            if artifact.name in seen_names:
                report.failures.append(
                    FailureRecord(
                        subject_id=artifact.name,
                        stage="publish",
                        error_kind=StorageError.error_kind,
                        message="artifact with the same name is already being published",
                    )
                )
                continue

            seen_names.add(artifact.name)
            unique_artifacts.append(artifact)

        self._progress_reporter.report_phase(
            "upload",
            f"成果物をストレージへアップロードします。artifacts={len(unique_artifacts)} bucket={self._config.bucket}",
        )

        def upload(artifact: Artifact) -> PublishedArtifact:
            return self._upload_one(job_id, artifact, cancel_token)

        for settled in self._pool.run_all(unique_artifacts, upload, on_settled=self._report_settled):
            if settled.succeeded:
                report.published.append(settled.value)
                continue

            report.failures.append(
                FailureRecord(
                    subject_id=settled.item.name,
                    stage="publish",
                    error_kind=error_kind_of(settled.error),
                    message=str(settled.error),
                )
            )

        return report

    def _upload_one(self, job_id: str, artifact: Artifact, cancel_token: CancellationToken) -> PublishedArtifact:
        cancel_token.raise_if_cancelled()

        object_key = object_key_for(self._config.key_prefix, job_id, artifact)
        try:
            locator = self._object_storage.upload_file(
                local_path=artifact.local_path,
                bucket=self._config.bucket,
                key=object_key,
                content_type=content_type_for(artifact),
            )
        except ExtractionError:
            raise
        except Exception as ex:
            raise StorageError(f"upload failed for {artifact.name}: {ex}") from ex

        return PublishedArtifact(artifact=artifact, object_key=object_key, locator=locator)

    def _report_settled(self, settled: SettledTask, current: int, total: int) -> None:
        if settled.succeeded:
            message = f"アップロード完了: {settled.item.name}"
        else:
            message = f"アップロード失敗: {settled.item.name} ({settled.error})"

        self._progress_reporter.report_progress(current=current, total=total, message=message)
