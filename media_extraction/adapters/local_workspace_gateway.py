import shutil
from pathlib import Path

from media_extraction.application.ports import WorkspacePort
from media_extraction.domain.errors import InvalidRequestError, ResourceError
from media_extraction.domain.models import Workspace


class LocalWorkspaceGateway(WorkspacePort):
    """ローカルディスク上にジョブ専用の作業ディレクトリを作るアダプターです。"""

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = base_dir

    def acquire(self, job_id: str) -> Workspace:
        """<base_dir>/<job_id> を排他的に作成します。"""

        if job_id.strip() == "" or Path(job_id).name != job_id or job_id in (".", ".."):
            raise InvalidRequestError(f"job_id cannot be used as a directory name: {job_id!r}")

        root_dir = self._base_dir / job_id
        workspace = Workspace(
            job_id=job_id,
            root_dir=root_dir,
            source_dir=root_dir / "source",
            output_dir=root_dir / "output",
            stems_dir=root_dir / "stems",
        )

        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            # 既存ディレクトリがあれば別ジョブと共有しないよう失敗させる
            root_dir.mkdir(exist_ok=False)
        except FileExistsError as ex:
            raise ResourceError(f"workspace already exists: {root_dir}") from ex
        except OSError as ex:
            raise ResourceError(f"failed to create workspace {root_dir}: {ex}") from ex

        try:
            for path in (workspace.source_dir, workspace.output_dir, workspace.stems_dir):
                path.mkdir()
        except OSError as ex:
            self.release(workspace)
            raise ResourceError(f"failed to prepare workspace {root_dir}: {ex}") from ex

        return workspace

    def release(self, workspace: Workspace) -> None:
        """作業ディレクトリを中身ごと削除します。存在しなければ何もしません。"""

        if workspace.root_dir.exists():
            shutil.rmtree(workspace.root_dir)
