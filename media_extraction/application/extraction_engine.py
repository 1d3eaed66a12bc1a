from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set

from media_extraction.application.cancellation import CancellationToken
from media_extraction.application.ports import MediaToolPort, ProgressReporterPort, SourceFetcherPort
from media_extraction.application.task_pool import BoundedTaskPool, SettledTask
from media_extraction.domain.errors import (
    InsufficientMetadataError,
    InvalidRequestError,
    ToolExecutionError,
)
from media_extraction.domain.models import (
    Artifact,
    ArtifactKind,
    AudioTrackExtract,
    ExtractionFailure,
    ExtractionReport,
    FrameAt,
    IntervalSampling,
    PlannedRequest,
    RegionCropFrameAt,
    SegmentCut,
    ShotBoundaryFrame,
    StemMix,
    VideoMetadata,
    Workspace,
)
from media_extraction.domain.naming import NamingContext, encode_artifact_name

FRAME_KINDS = (ArtifactKind.FRAME, ArtifactKind.SAMPLE, ArtifactKind.SHOT, ArtifactKind.CROP)


@dataclass(frozen=True)
class ExtractionEngineConfig:
    """抽出エンジンの設定です。"""

    max_workers: int = 3
    stem_download_workers: int = 3
    max_interval_frames: int = 3600


@dataclass(frozen=True)
class _OutputSpec:
    kind: ArtifactKind
    name: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _RequestTask:
    planned: PlannedRequest
    outputs: List[_OutputSpec]


class ExtractionEngine:
    """ローカルのソースに対して抽出要求をまとめて実行します。

    要求どうしは互いに独立しているため、上限付きのワーカープールで並列に
    実行します。1件の失敗は他の要求を止めず、要求ごとの結果を返します。
    再試行はしません（再試行するかはジョブ側が決めます）。
    """

    def __init__(
        self,
        media_tool: MediaToolPort,
        source_fetcher: SourceFetcherPort,
        progress_reporter: ProgressReporterPort,
        config: ExtractionEngineConfig = ExtractionEngineConfig(),
    ) -> None:
        self._media_tool = media_tool
        self._source_fetcher = source_fetcher
        self._progress_reporter = progress_reporter
        self._config = config
        self._pool = BoundedTaskPool(max_workers=config.max_workers, name="extract")

    def run(
        self,
        source_path: Path,
        planned_requests: Sequence[PlannedRequest],
        workspace: Workspace,
        metadata: Optional[VideoMetadata],
        cancel_token: CancellationToken,
        naming_context: Optional[NamingContext] = None,
    ) -> ExtractionReport:
        """全要求を実行し、成果物と要求ごとの失敗を返します。"""

        if naming_context is None:
            naming_context = NamingContext.for_job(
                metadata.duration_seconds if metadata is not None else None,
                [planned.request for planned in planned_requests],
                source_path.suffix,
            )

        report = ExtractionReport()
        tasks: List[_RequestTask] = []
        claimed_names: Set[str] = set()

        # 名前の決定と入力検証はサブプロセスを起動する前に済ませる
        for planned in planned_requests:
            try:
                outputs = self._plan_outputs(planned, metadata, naming_context, cancel_token)
                self._claim_names(outputs, claimed_names)
            except Exception as ex:
                report.failures.append(ExtractionFailure(planned=planned, error=ex))
                continue

            tasks.append(_RequestTask(planned=planned, outputs=outputs))

        self._progress_reporter.report_phase(
            "extract",
            f"抽出を開始します。requests={len(tasks)} rejected={len(report.failures)} workers={self._pool.max_workers}",
        )

        def execute(task: _RequestTask) -> List[Artifact]:
            return self._execute(task, source_path, workspace, cancel_token)

        settled_tasks = self._pool.run_all(tasks, execute, on_settled=self._report_settled)

        for settled in settled_tasks:
            if settled.succeeded:
                report.artifacts.extend(settled.value)
            else:
                report.failures.append(ExtractionFailure(planned=settled.item.planned, error=settled.error))

        return report

    def _plan_outputs(
        self,
        planned: PlannedRequest,
        metadata: Optional[VideoMetadata],
        context: NamingContext,
        cancel_token: CancellationToken,
    ) -> List[_OutputSpec]:
        """要求を検証し、生成するファイルの一覧を決めます。"""

        request = planned.request
        duration = metadata.duration_seconds if metadata is not None else None

        if isinstance(request, FrameAt):
            self._check_timestamp(request.timestamp, duration)
            params = {"timestamp": request.timestamp}
            return [_OutputSpec(ArtifactKind.FRAME, encode_artifact_name(ArtifactKind.FRAME, params, context), params)]

        if isinstance(request, ShotBoundaryFrame):
            self._check_timestamp(request.timestamp, duration)
            params = {
                "timestamp": request.timestamp,
                "shot_index": request.shot_index,
                "boundary": request.boundary,
            }
            return [_OutputSpec(ArtifactKind.SHOT, encode_artifact_name(ArtifactKind.SHOT, params, context), params)]

        if isinstance(request, RegionCropFrameAt):
            self._check_timestamp(request.timestamp, duration)
            if metadata is None or metadata.has_dimensions == False:
                raise InsufficientMetadataError("frame dimensions are required to compute the crop region")

            crop = request.box.to_pixels(metadata.width, metadata.height)
            params = {"timestamp": request.timestamp, "subject": request.role, "crop": crop}
            return [_OutputSpec(ArtifactKind.CROP, encode_artifact_name(ArtifactKind.CROP, params, context), params)]

        if isinstance(request, IntervalSampling):
            return [
                _OutputSpec(ArtifactKind.SAMPLE, encode_artifact_name(ArtifactKind.SAMPLE, params, context), params)
                for params in ({"timestamp": timestamp} for timestamp in self._sampling_points(request, duration))
            ]

        if isinstance(request, AudioTrackExtract):
            params = {"codec": request.codec}
            name = encode_artifact_name(ArtifactKind.AUDIO, params, context)
            if self._media_tool.supports_audio_codec(request.codec, cancel_token) == False:
                raise InvalidRequestError(f"audio codec is not available in this ffmpeg build: {request.codec}")

            return [_OutputSpec(ArtifactKind.AUDIO, name, params)]

        if isinstance(request, SegmentCut):
            if request.start_time < 0:
                raise InvalidRequestError(f"start_time must not be negative: {request.start_time}")
            if request.end_time <= request.start_time:
                raise InvalidRequestError(
                    f"end_time ({request.end_time}) must be greater than start_time ({request.start_time})"
                )
            if duration is not None and request.start_time >= duration:
                raise InvalidRequestError(f"start_time {request.start_time} is beyond source duration {duration}")

            params = {"start_time": request.start_time, "end_time": request.end_time}
            return [_OutputSpec(ArtifactKind.CLIP, encode_artifact_name(ArtifactKind.CLIP, params, context), params)]

        if isinstance(request, StemMix):
            if len(request.inputs) < 2:
                raise InvalidRequestError("stem mix needs at least 2 inputs")

            params = {"inputs": tuple(request.inputs)}
            return [_OutputSpec(ArtifactKind.MIX, encode_artifact_name(ArtifactKind.MIX, params, context), params)]

        raise InvalidRequestError(f"unsupported request: {type(request).__name__}")

    def _sampling_points(self, request: IntervalSampling, duration: Optional[float]) -> List[float]:
        """step ごとの時刻を整数ミリ秒で計算します（浮動小数の誤差を避けるため）。"""

        if request.step <= 0 or request.total_duration <= 0:
            raise InvalidRequestError("step and total_duration must be greater than 0")

        total = request.total_duration
        if duration is not None:
            total = min(total, duration)

        step_ms = int(round(request.step * 1000))
        total_ms = int(round(total * 1000))
        if step_ms <= 0:
            raise InvalidRequestError(f"step is below millisecond precision: {request.step}")

        points = [millis / 1000.0 for millis in range(step_ms, total_ms, step_ms)]
        if len(points) == 0:
            raise InvalidRequestError("interval sampling yields no frames")
        if len(points) > self._config.max_interval_frames:
            raise InvalidRequestError(
                f"interval sampling yields {len(points)} frames (limit {self._config.max_interval_frames})"
            )

        return points

    @staticmethod
    def _check_timestamp(timestamp: float, duration: Optional[float]) -> None:
        if timestamp < 0:
            raise InvalidRequestError(f"timestamp must not be negative: {timestamp}")
        if duration is not None and timestamp >= duration:
            raise InvalidRequestError(f"timestamp {timestamp} is beyond source duration {duration}")

    @staticmethod
    def _claim_names(outputs: List[_OutputSpec], claimed_names: Set[str]) -> None:
        """同じジョブ内で名前が重複した要求は上書きを防ぐため拒否します。"""

        names = [output.name for output in outputs]
        duplicated = [name for name in names if name in claimed_names]
        if len(duplicated) > 0 or len(set(names)) != len(names):
            raise InvalidRequestError(f"artifact name collides with another request: {duplicated or names}")

        claimed_names.update(names)

    def _execute(
        self,
        task: _RequestTask,
        source_path: Path,
        workspace: Workspace,
        cancel_token: CancellationToken,
    ) -> List[Artifact]:
        """1要求を実行します。失敗時は作りかけの出力を消してから例外を戻します。"""

        cancel_token.raise_if_cancelled()

        produced: List[Path] = []
        try:
            for output in task.outputs:
                cancel_token.raise_if_cancelled()
                output_path = workspace.output_dir / output.name
                produced.append(output_path)

                self._produce(task.planned, output, source_path, output_path, workspace, cancel_token)
                self._require_output(output_path)

        except Exception:
            self._discard(produced)
            raise

        return [
            Artifact(
                local_path=workspace.output_dir / output.name,
                name=output.name,
                kind=output.kind,
                request_id=task.planned.request_id,
            )
            for output in task.outputs
        ]

    def _produce(
        self,
        planned: PlannedRequest,
        output: _OutputSpec,
        source_path: Path,
        output_path: Path,
        workspace: Workspace,
        cancel_token: CancellationToken,
    ) -> None:
        if output.kind in FRAME_KINDS:
            self._media_tool.extract_frame(
                input_path=source_path,
                timestamp=output.params["timestamp"],
                output_path=output_path,
                cancel_token=cancel_token,
                crop=output.params.get("crop"),
            )
            return

        if output.kind == ArtifactKind.AUDIO:
            self._media_tool.extract_audio(source_path, output.params["codec"], output_path, cancel_token)
            return

        if output.kind == ArtifactKind.CLIP:
            self._media_tool.cut_segment(
                source_path,
                output.params["start_time"],
                output.params["end_time"],
                output_path,
                cancel_token,
            )
            return

        if output.kind == ArtifactKind.MIX:
            self._mix_stems(planned, output, output_path, workspace, cancel_token)
            return

        raise InvalidRequestError(f"unsupported artifact kind: {output.kind}")

    def _mix_stems(
        self,
        planned: PlannedRequest,
        output: _OutputSpec,
        output_path: Path,
        workspace: Workspace,
        cancel_token: CancellationToken,
    ) -> None:
        """全入力のダウンロードを待ってから1回だけミックスします。"""

        inputs = list(output.params["inputs"])
        stems_dir = workspace.stems_dir / planned.request_id
        stems_dir.mkdir(parents=True, exist_ok=True)

        self._progress_reporter.report_phase("stem_download", f"{planned.request_id}: 入力 {len(inputs)} 本を取得します。")

        download_pool = BoundedTaskPool(
            max_workers=min(len(inputs), self._config.stem_download_workers),
            name="stem",
        )
        indexed_inputs = list(enumerate(inputs))

        def download(item) -> Path:
            index, url = item
            return self._source_fetcher.fetch(url, stems_dir, f"stem_{index:02d}", cancel_token)

        downloads = download_pool.run_all(indexed_inputs, download)

        failed = [settled for settled in downloads if settled.succeeded == False]
        if len(failed) > 0:
            # 入力が1本でも欠けたらミックスしない
            raise failed[0].error

        cancel_token.raise_if_cancelled()
        self._media_tool.mix_audio([settled.value for settled in downloads], output_path, cancel_token)

    @staticmethod
    def _require_output(output_path: Path) -> None:
        if output_path.exists() == False or output_path.stat().st_size == 0:
            raise ToolExecutionError(f"tool finished without producing output: {output_path.name}")

    @staticmethod
    def _discard(paths: List[Path]) -> None:
        for path in paths:
            if path.exists():
                path.unlink()

    def _report_settled(self, settled: SettledTask, current: int, total: int) -> None:
        request_id = settled.item.planned.request_id
        if settled.succeeded:
            message = f"抽出完了: {request_id} ({len(settled.value)} 件)"
        else:
            message = f"抽出失敗: {request_id} ({settled.error})"

        self._progress_reporter.report_progress(current=current, total=total, message=message)
