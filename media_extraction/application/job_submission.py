"""ジョブ投入用のJSONドキュメントを ExtractionJob へ変換します。

形式:
    {
        "jobId": "任意。省略時は採番",
        "sourceUrl": "https://...",
        "requests": [{"type": "frame_at", "timestamp": 2.0}, ...]
    }
"""

import uuid
from typing import Any, Callable, Mapping

from media_extraction.domain.errors import InvalidRequestError
from media_extraction.domain.job_models import ExtractionJob
from media_extraction.domain.models import (
    AudioTrackExtract,
    ExtractionRequest,
    FrameAt,
    IntervalSampling,
    NormalizedBox,
    RegionCropFrameAt,
    RequestKind,
    SegmentCut,
    ShotBoundaryFrame,
    StemMix,
)


def parse_job_document(
    document: Mapping[str, Any],
    job_id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
) -> ExtractionJob:
    """ドキュメント全体を検証してジョブを作ります。"""

    if isinstance(document, Mapping) == False:
        raise InvalidRequestError("job document must be an object")

    job_id = document.get("jobId")
    if job_id is None:
        job_id = job_id_factory()
    if isinstance(job_id, str) == False or job_id.strip() == "":
        raise InvalidRequestError("jobId must be a non-empty string")

    source_url = document.get("sourceUrl")
    if isinstance(source_url, str) == False or source_url.strip() == "":
        raise InvalidRequestError("sourceUrl is required")

    raw_requests = document.get("requests")
    if isinstance(raw_requests, list) == False or len(raw_requests) == 0:
        raise InvalidRequestError("requests must be a non-empty list")

    requests = tuple(parse_extraction_request(item, index) for index, item in enumerate(raw_requests))
    return ExtractionJob(job_id=job_id, source_url=source_url.strip(), requests=requests)


def parse_extraction_request(data: Any, index: int = 0) -> ExtractionRequest:
    """"type" に応じて抽出要求の種類を選びます。"""

    if isinstance(data, Mapping) == False:
        raise InvalidRequestError(f"requests[{index}] must be an object")

    raw_type = data.get("type")
    try:
        kind = RequestKind(raw_type)
    except ValueError as ex:
        raise InvalidRequestError(f"requests[{index}]: unknown type {raw_type!r}") from ex

    where = f"requests[{index}]"

    if kind == RequestKind.FRAME_AT:
        return FrameAt(timestamp=_number(data, "timestamp", where))

    if kind == RequestKind.INTERVAL_SAMPLING:
        return IntervalSampling(
            step=_number(data, "step", where),
            total_duration=_number(data, "totalDuration", where),
        )

    if kind == RequestKind.REGION_CROP_FRAME_AT:
        box = data.get("box")
        if isinstance(box, Mapping) == False:
            raise InvalidRequestError(f"{where}.box must be an object")

        return RegionCropFrameAt(
            timestamp=_number(data, "timestamp", where),
            box=NormalizedBox(
                x=_number(box, "x", f"{where}.box"),
                y=_number(box, "y", f"{where}.box"),
                width=_number(box, "width", f"{where}.box"),
                height=_number(box, "height", f"{where}.box"),
            ),
            role=_string(data, "role", where),
        )

    if kind == RequestKind.SHOT_BOUNDARY_FRAME:
        shot_index = data.get("shotIndex")
        if isinstance(shot_index, bool) or isinstance(shot_index, int) == False:
            raise InvalidRequestError(f"{where}.shotIndex must be an integer")

        return ShotBoundaryFrame(
            shot_index=shot_index,
            boundary=_string(data, "boundary", where),
            timestamp=_number(data, "timestamp", where),
        )

    if kind == RequestKind.AUDIO_TRACK_EXTRACT:
        codec = data.get("codec", "aac")
        if isinstance(codec, str) == False or codec.strip() == "":
            raise InvalidRequestError(f"{where}.codec must be a non-empty string")

        return AudioTrackExtract(codec=codec.strip().lower())

    if kind == RequestKind.SEGMENT_CUT:
        return SegmentCut(
            start_time=_number(data, "startTime", where),
            end_time=_number(data, "endTime", where),
        )

    inputs = data.get("inputs")
    if isinstance(inputs, list) == False or any(isinstance(item, str) == False for item in inputs):
        raise InvalidRequestError(f"{where}.inputs must be a list of urls")

    return StemMix(inputs=tuple(inputs))


def _number(data: Mapping[str, Any], key: str, where: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or isinstance(value, (int, float)) == False:
        raise InvalidRequestError(f"{where}.{key} must be a number")

    return float(value)


def _string(data: Mapping[str, Any], key: str, where: str) -> str:
    value = data.get(key)
    if isinstance(value, str) == False or value.strip() == "":
        raise InvalidRequestError(f"{where}.{key} must be a non-empty string")

    return value
