from pathlib import Path
from typing import Optional, Protocol, Sequence

from media_extraction.application.cancellation import CancellationToken
from media_extraction.domain.models import PixelBox, VideoMetadata, Workspace


class ProgressReporterPort(Protocol):
    """進捗通知のポートです。"""

    def report_phase(self, phase: str, message: str) -> None:
        """フェーズ開始・更新を通知します。"""

    def report_progress(self, current: int, total: int, message: str) -> None:
        """進捗率を通知します。"""


class WorkspacePort(Protocol):
    """ジョブ専用の作業領域を扱うポートです。"""

    def acquire(self, job_id: str) -> Workspace:
        """作業領域を確保します。確保できなければ ResourceError です。"""

    def release(self, workspace: Workspace) -> None:
        """作業領域を中身ごと削除します。何度呼んでもかまいません。"""


class SourceFetcherPort(Protocol):
    """リモートのメディアをローカルへ取得するポートです。"""

    def fetch(
        self,
        source_url: str,
        destination_dir: Path,
        file_stem: str,
        cancel_token: CancellationToken,
    ) -> Path:
        """本体をディスクへストリーム保存し、そのパスを返します。"""


class MediaToolPort(Protocol):
    """外部の変換ツール（ffmpeg等）のポートです。"""

    def probe(self, input_path: Path, cancel_token: CancellationToken) -> VideoMetadata:
        """長さ・寸法・コーデックを取得します。"""

    def extract_frame(
        self,
        input_path: Path,
        timestamp: float,
        output_path: Path,
        cancel_token: CancellationToken,
        crop: Optional[PixelBox] = None,
    ) -> Path:
        """指定時刻の静止画を1枚出力します。"""

    def extract_audio(
        self,
        input_path: Path,
        codec: str,
        output_path: Path,
        cancel_token: CancellationToken,
    ) -> Path:
        """映像を除いて音声トラックを出力します。"""

    def cut_segment(
        self,
        input_path: Path,
        start_time: float,
        end_time: float,
        output_path: Path,
        cancel_token: CancellationToken,
    ) -> Path:
        """ストリームコピーで区間を切り出します。"""

    def mix_audio(
        self,
        input_paths: Sequence[Path],
        output_path: Path,
        cancel_token: CancellationToken,
    ) -> Path:
        """複数の音声入力を1本へミックスします。"""

    def supports_audio_codec(self, codec: str, cancel_token: CancellationToken) -> bool:
        """音声コーデックで出力できるかを返します。"copy" は常に可能です。"""


class ObjectStoragePort(Protocol):
    """オブジェクトストレージのポートです。"""

    def upload_file(
        self,
        local_path: Path,
        bucket: str,
        key: str,
        content_type: Optional[str] = None,
    ) -> str:
        """ローカルファイルをアップロードし、公開ロケータを返します。"""
