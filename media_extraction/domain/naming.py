"""成果物のファイル名を決める純粋関数群です。

時刻を含む名前は辞書順で時刻順に並ぶように、整数秒をジョブ全体の長さの
整数部の桁数でゼロ埋めし、ミリ秒を区切り文字 "_" の後ろに3桁で付けます。
小数点は使いません（ファイル名・URLとして安全にするため）。
"""

import hashlib
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from media_extraction.domain.errors import InvalidRequestError
from media_extraction.domain.models import (
    ArtifactKind,
    ExtractionRequest,
    FrameAt,
    IntervalSampling,
    RegionCropFrameAt,
    SegmentCut,
    ShotBoundaryFrame,
)

TIMESTAMP_SEPARATOR = "_"
FRAME_EXTENSION = ".jpg"
MIX_EXTENSION = ".m4a"
DEFAULT_CLIP_SUFFIX = ".mp4"

# 音声コーデック -> コンテナ拡張子
AUDIO_CODEC_EXTENSIONS = {
    "copy": ".m4a",
    "aac": ".m4a",
    "alac": ".m4a",
    "mp3": ".mp3",
    "libmp3lame": ".mp3",
    "opus": ".ogg",
    "libopus": ".ogg",
    "vorbis": ".ogg",
    "libvorbis": ".ogg",
    "flac": ".flac",
    "pcm_s16le": ".wav",
}

SHOT_BOUNDARIES = ("start", "end")

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
_SUFFIX_PATTERN = re.compile(r"^\.[a-z0-9]{1,8}$")


@dataclass(frozen=True)
class NamingContext:
    """ジョブ単位で固定される命名パラメータです。"""

    timestamp_width: int = 1
    clip_suffix: str = DEFAULT_CLIP_SUFFIX

    @classmethod
    def for_job(
        cls,
        duration_seconds: Optional[float],
        requests: Iterable[ExtractionRequest] = (),
        source_suffix: Optional[str] = None,
    ) -> "NamingContext":
        """ソースの長さ（不明なら要求中の最大時刻）から桁数を決めます。"""

        if duration_seconds is not None and duration_seconds > 0:
            reference = duration_seconds
        else:
            reference = max((_largest_timestamp(request) for request in requests), default=0.0)

        width = len(str(int(max(reference, 0.0))))

        suffix = (source_suffix or "").lower()
        if _SUFFIX_PATTERN.match(suffix) is None:
            suffix = DEFAULT_CLIP_SUFFIX

        return cls(timestamp_width=width, clip_suffix=suffix)


def encode_timestamp(seconds: float, context: NamingContext) -> str:
    """時刻を辞書順で比較可能な文字列へ変換します。"""

    if seconds < 0:
        raise InvalidRequestError(f"timestamp must not be negative: {seconds}")

    total_millis = int(round(seconds * 1000))
    whole_seconds, millis = divmod(total_millis, 1000)

    return f"{whole_seconds:0{context.timestamp_width}d}{TIMESTAMP_SEPARATOR}{millis:03d}"


def slugify(value: str) -> str:
    """被写体IDなどをファイル名に使える形へ正規化します。"""

    slug = _SLUG_PATTERN.sub("-", str(value).strip().lower()).strip("-")
    if slug == "":
        raise InvalidRequestError(f"identifier is empty after normalization: {value!r}")

    return slug


def audio_extension_for(codec: str) -> str:
    extension = AUDIO_CODEC_EXTENSIONS.get(codec.strip().lower())
    if extension is None:
        raise InvalidRequestError(f"unsupported audio codec: {codec}")

    return extension


def encode_artifact_name(kind: ArtifactKind, params: Mapping[str, Any], context: NamingContext) -> str:
    """成果物の論理的な識別情報からファイル名を決めます。"""

    if kind == ArtifactKind.FRAME:
        return f"frame_{encode_timestamp(params['timestamp'], context)}{FRAME_EXTENSION}"

    if kind == ArtifactKind.SAMPLE:
        return f"sample_{encode_timestamp(params['timestamp'], context)}{FRAME_EXTENSION}"

    if kind == ArtifactKind.SHOT:
        shot_index = int(params["shot_index"])
        if shot_index < 0:
            raise InvalidRequestError(f"shot index must not be negative: {shot_index}")

        boundary = str(params["boundary"]).lower()
        if boundary not in SHOT_BOUNDARIES:
            raise InvalidRequestError(f"shot boundary must be start or end: {params['boundary']}")

        timestamp = encode_timestamp(params["timestamp"], context)
        return f"shot_{shot_index:04d}_{boundary}_{timestamp}{FRAME_EXTENSION}"

    if kind == ArtifactKind.CROP:
        subject = slugify(params["subject"])
        return f"crop_{subject}_{encode_timestamp(params['timestamp'], context)}{FRAME_EXTENSION}"

    if kind == ArtifactKind.AUDIO:
        codec = str(params["codec"])
        return f"audio_{slugify(codec)}{audio_extension_for(codec)}"

    if kind == ArtifactKind.CLIP:
        start = encode_timestamp(params["start_time"], context)
        end = encode_timestamp(params["end_time"], context)
        return f"clip_{start}_{end}{context.clip_suffix}"

    if kind == ArtifactKind.MIX:
        digest = hashlib.sha1("\n".join(params["inputs"]).encode("utf-8")).hexdigest()[:12]
        return f"mix_{digest}{MIX_EXTENSION}"

    raise InvalidRequestError(f"unknown artifact kind: {kind}")


def _largest_timestamp(request: ExtractionRequest) -> float:
    if isinstance(request, (FrameAt, RegionCropFrameAt, ShotBoundaryFrame)):
        return request.timestamp

    if isinstance(request, IntervalSampling):
        return request.total_duration

    if isinstance(request, SegmentCut):
        return request.end_time

    return 0.0
