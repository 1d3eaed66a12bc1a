from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Tuple

from media_extraction.domain.models import ExtractionRequest, FailureRecord, PlannedRequest, PublishedArtifact


class JobState(str, Enum):
    """ジョブの状態です。前方向にのみ遷移します。"""

    CREATED = "created"
    ACQUIRING = "acquiring"
    EXTRACTING = "extracting"
    PUBLISHING = "publishing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


# 各状態から遷移できる先の状態
ALLOWED_TRANSITIONS = {
    JobState.CREATED: (JobState.ACQUIRING, JobState.FAILED),
    JobState.ACQUIRING: (JobState.EXTRACTING, JobState.FAILED),
    JobState.EXTRACTING: (JobState.PUBLISHING, JobState.FAILED),
    JobState.PUBLISHING: (JobState.COMPLETED, JobState.FAILED),
    JobState.COMPLETED: (),
    JobState.FAILED: (),
}


@dataclass(frozen=True)
class ExtractionJob:
    """1つのソースに対する抽出ジョブを表します。"""

    job_id: str
    source_url: str
    requests: Tuple[ExtractionRequest, ...]

    def planned_requests(self) -> List[PlannedRequest]:
        """要求の並び順からIDを付与します。"""

        return [PlannedRequest.plan(index, request) for index, request in enumerate(self.requests)]


@dataclass(frozen=True)
class JobOutcome:
    """終端状態に達したジョブの結果です。"""

    job_id: str
    state: JobState
    published: Tuple[PublishedArtifact, ...] = ()
    failures: Tuple[FailureRecord, ...] = ()
    state_history: Tuple[JobState, ...] = field(default=())

    @property
    def is_partial(self) -> bool:
        return self.state == JobState.COMPLETED and len(self.failures) > 0

    def to_dict(self) -> Dict[str, Any]:
        """投入側へ返すJSON形式に変換します。"""

        return {
            "jobId": self.job_id,
            "state": self.state.value,
            "partial": self.is_partial,
            "artifacts": [
                {
                    "artifactName": item.name,
                    "locator": item.locator,
                    "requestId": item.artifact.request_id,
                }
                for item in self.published
            ],
            "failures": [
                {
                    "id": failure.subject_id,
                    "stage": failure.stage,
                    "errorKind": failure.error_kind,
                    "message": failure.message,
                }
                for failure in self.failures
            ],
        }
