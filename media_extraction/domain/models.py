from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple, Union

from media_extraction.domain.errors import InvalidRequestError


class RequestKind(str, Enum):
    """抽出要求の種類です。"""

    FRAME_AT = "frame_at"
    INTERVAL_SAMPLING = "interval_sampling"
    REGION_CROP_FRAME_AT = "region_crop_frame_at"
    SHOT_BOUNDARY_FRAME = "shot_boundary_frame"
    AUDIO_TRACK_EXTRACT = "audio_track_extract"
    SEGMENT_CUT = "segment_cut"
    STEM_MIX = "stem_mix"


class ArtifactKind(str, Enum):
    """成果物の種類です。ファイル名の接頭辞にも使います。"""

    FRAME = "frame"
    SAMPLE = "sample"
    SHOT = "shot"
    CROP = "crop"
    AUDIO = "audio"
    CLIP = "clip"
    MIX = "mix"


@dataclass(frozen=True)
class PixelBox:
    """ピクセル単位の切り出し領域を表します。"""

    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class NormalizedBox:
    """フレーム寸法に対する比率 [0,1] で表した領域です。"""

    x: float
    y: float
    width: float
    height: float

    def validate(self) -> None:
        """値の範囲を検証します。"""

        for name, value in (("x", self.x), ("y", self.y), ("width", self.width), ("height", self.height)):
            if value < 0.0 or value > 1.0:
                raise InvalidRequestError(f"box.{name} must be within [0, 1]: {value}")

        if self.width <= 0.0 or self.height <= 0.0:
            raise InvalidRequestError("box width and height must be greater than 0")

        # 浮動小数の誤差分だけ許容する
        if self.x + self.width > 1.0 + 1e-9 or self.y + self.height > 1.0 + 1e-9:
            raise InvalidRequestError("box must fit inside the frame")

    def to_pixels(self, frame_width: int, frame_height: int) -> PixelBox:
        """比率をフレーム寸法に掛けて最も近い整数ピクセルへ丸めます。"""

        self.validate()

        x = min(int(round(self.x * frame_width)), frame_width - 1)
        y = min(int(round(self.y * frame_height)), frame_height - 1)
        width = max(int(round(self.width * frame_width)), 1)
        height = max(int(round(self.height * frame_height)), 1)

        # 丸めでフレーム外へはみ出した分を削る
        width = min(width, frame_width - x)
        height = min(height, frame_height - y)

        return PixelBox(x=x, y=y, width=width, height=height)


@dataclass(frozen=True)
class FrameAt:
    """指定時刻の静止画1枚を要求します。"""

    timestamp: float

    kind = RequestKind.FRAME_AT


@dataclass(frozen=True)
class IntervalSampling:
    """step 秒ごとのフレームを [0, total_duration) の範囲で要求します。"""

    step: float
    total_duration: float

    kind = RequestKind.INTERVAL_SAMPLING


@dataclass(frozen=True)
class RegionCropFrameAt:
    """指定時刻のフレームから領域を切り出した静止画を要求します。"""

    timestamp: float
    box: NormalizedBox
    role: str

    kind = RequestKind.REGION_CROP_FRAME_AT


@dataclass(frozen=True)
class ShotBoundaryFrame:
    """ショット境界 (start / end) のフレームを要求します。"""

    shot_index: int
    boundary: str
    timestamp: float

    kind = RequestKind.SHOT_BOUNDARY_FRAME


@dataclass(frozen=True)
class AudioTrackExtract:
    """映像を除いた音声トラックを要求します。"""

    codec: str = "aac"

    kind = RequestKind.AUDIO_TRACK_EXTRACT


@dataclass(frozen=True)
class SegmentCut:
    """2つの時刻の間のクリップをストリームコピーで要求します。"""

    start_time: float
    end_time: float

    kind = RequestKind.SEGMENT_CUT


@dataclass(frozen=True)
class StemMix:
    """N本の音声入力をダウンロードして1本にミックスする要求です。"""

    inputs: Tuple[str, ...]

    kind = RequestKind.STEM_MIX


ExtractionRequest = Union[
    FrameAt,
    IntervalSampling,
    RegionCropFrameAt,
    ShotBoundaryFrame,
    AudioTrackExtract,
    SegmentCut,
    StemMix,
]


@dataclass(frozen=True)
class PlannedRequest:
    """ジョブ内で一意なIDを付与した抽出要求です。"""

    request_id: str
    request: ExtractionRequest

    @classmethod
    def plan(cls, index: int, request: ExtractionRequest) -> "PlannedRequest":
        return cls(request_id=f"req-{index:03d}-{request.kind.value}", request=request)


@dataclass(frozen=True)
class VideoMetadata:
    """probeで得たメタデータです。取れなかった項目は None です。"""

    duration_seconds: Optional[float]
    width: Optional[int] = None
    height: Optional[int] = None
    codecs: Tuple[str, ...] = ()
    format_name: Optional[str] = None

    @property
    def has_dimensions(self) -> bool:
        return self.width is not None and self.height is not None and self.width > 0 and self.height > 0


@dataclass(frozen=True)
class Workspace:
    """ジョブ専用の作業ディレクトリを表します。"""

    job_id: str
    root_dir: Path
    source_dir: Path
    output_dir: Path
    stems_dir: Path


@dataclass(frozen=True)
class Artifact:
    """ローカルに生成された成果物です。"""

    local_path: Path
    name: str
    kind: ArtifactKind
    request_id: str


@dataclass(frozen=True)
class PublishedArtifact:
    """アップロード済みの成果物です。"""

    artifact: Artifact
    object_key: str
    locator: str

    @property
    def name(self) -> str:
        return self.artifact.name


@dataclass(frozen=True)
class FailureRecord:
    """要求または成果物単位の失敗を表します。"""

    subject_id: str
    stage: str
    error_kind: str
    message: str


@dataclass
class ExtractionFailure:
    """抽出エンジンが観測した要求単位の失敗です。"""

    planned: PlannedRequest
    error: Exception

    @property
    def retryable(self) -> bool:
        return bool(getattr(self.error, "retryable", False))


@dataclass
class ExtractionReport:
    """抽出エンジンの実行結果です。"""

    artifacts: List[Artifact] = field(default_factory=list)
    failures: List[ExtractionFailure] = field(default_factory=list)


@dataclass
class PublishReport:
    """公開処理の実行結果です。"""

    published: List[PublishedArtifact] = field(default_factory=list)
    failures: List[FailureRecord] = field(default_factory=list)
