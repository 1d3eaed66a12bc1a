import json
import re
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, List, Optional, Sequence

from media_extraction.application.cancellation import CancellationToken
from media_extraction.application.ports import MediaToolPort
from media_extraction.domain.errors import (
    CutUnsupportedError,
    InvalidRequestError,
    JobCancelledError,
    OperationTimeoutError,
    ToolExecutionError,
)
from media_extraction.domain.models import PixelBox, VideoMetadata

# ストリームコピーを拒否されたときの stderr の文言
STREAM_COPY_REJECTION_PATTERNS = (
    "could not find tag for codec",
    "not currently supported in container",
    "codec not currently supported",
    "could not write header",
    "incorrect codec parameters",
    "does not support",
)

# 再実行で回復しうる失敗
TRANSIENT_PATTERNS = (
    "i/o error",
    "resource temporarily unavailable",
    "cannot allocate memory",
    "no space left on device",
)

_ENCODERS_PATTERN = re.compile(r"\(encoders:([^)]*)\)")

# 要求のコーデック名 -> ffmpeg のエンコーダ名
AUDIO_ENCODERS = {
    "mp3": "libmp3lame",
    "opus": "libopus",
    "vorbis": "libvorbis",
}


@dataclass(frozen=True)
class FfmpegConfig:
    """ffmpeg / ffprobe の呼び出し設定です。"""

    ffmpeg_path: Optional[str] = None
    ffprobe_path: Optional[str] = None
    timeout_sec: float = 600.0
    kill_grace_period_sec: float = 5.0
    poll_interval_sec: float = 0.2
    jpeg_quality: int = 2
    mix_bitrate: str = "192k"


class FfmpegMediaTool(MediaToolPort):
    """ffmpeg / ffprobe をサブプロセスで呼び出すアダプターです。

    1操作につき1回の呼び出しで、成功すれば出力パスを返し、失敗すれば型付きの
    例外を送出します。タイムアウトとキャンセルはプロセスを終了させてから通知します。
    """

    def __init__(self, config: FfmpegConfig = FfmpegConfig()) -> None:
        self._config = config
        self._codec_lock = threading.Lock()
        self._audio_encoders: Optional[FrozenSet[str]] = None

    def probe(self, input_path: Path, cancel_token: CancellationToken) -> VideoMetadata:
        """ffprobe のJSON出力からメタデータを組み立てます。"""

        command = [
            self._executable(self._config.ffprobe_path, "ffprobe"),
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(input_path),
        ]

        completed = self._run(command, cancel_token)
        try:
            payload = json.loads(completed.stdout or "{}")
        except ValueError as ex:
            raise ToolExecutionError(f"ffprobe returned invalid json: {ex}") from ex

        return parse_probe_payload(payload)

    def extract_frame(
        self,
        input_path: Path,
        timestamp: float,
        output_path: Path,
        cancel_token: CancellationToken,
        crop: Optional[PixelBox] = None,
    ) -> Path:
        """-ss で入力前シークし、1フレームだけ書き出します。"""

        command = self._ffmpeg_base() + [
            "-ss",
            f"{timestamp:.3f}",
            "-i",
            str(input_path),
            "-frames:v",
            "1",
        ]

        if crop is not None:
            command.extend(["-vf", f"crop={crop.width}:{crop.height}:{crop.x}:{crop.y}"])

        command.extend(["-q:v", str(self._config.jpeg_quality), str(output_path)])

        self._run(command, cancel_token)
        return output_path

    def extract_audio(
        self,
        input_path: Path,
        codec: str,
        output_path: Path,
        cancel_token: CancellationToken,
    ) -> Path:
        """映像を捨てて最初の音声ストリームだけを出力します。"""

        normalized = codec.strip().lower()
        if normalized == "":
            raise InvalidRequestError("audio codec is required")

        command = self._ffmpeg_base() + [
            "-i",
            str(input_path),
            "-vn",
            "-map",
            "0:a:0",
            "-c:a",
            AUDIO_ENCODERS.get(normalized, normalized),
            str(output_path),
        ]

        self._run(command, cancel_token)
        return output_path

    def cut_segment(
        self,
        input_path: Path,
        start_time: float,
        end_time: float,
        output_path: Path,
        cancel_token: CancellationToken,
    ) -> Path:
        """再エンコードせずに区間を切り出します。拒否された場合に再エンコードへは切り替えません。"""

        command = self._ffmpeg_base() + [
            "-ss",
            f"{start_time:.3f}",
            "-i",
            str(input_path),
            "-t",
            f"{end_time - start_time:.3f}",
            "-c",
            "copy",
            "-avoid_negative_ts",
            "make_zero",
            str(output_path),
        ]

        try:
            self._run(command, cancel_token)
        except ToolExecutionError as ex:
            if is_stream_copy_rejection(str(ex)):
                raise CutUnsupportedError(
                    f"stream copy is not possible for this media, re-encoding is required: {ex}"
                ) from ex
            raise

        return output_path

    def mix_audio(
        self,
        input_paths: Sequence[Path],
        output_path: Path,
        cancel_token: CancellationToken,
    ) -> Path:
        """amix フィルタで全入力を1本にまとめます。"""

        if len(input_paths) == 0:
            raise InvalidRequestError("no inputs to mix")

        command = self._ffmpeg_base()
        for input_path in input_paths:
            command.extend(["-i", str(input_path)])

        command.extend(
            [
                "-filter_complex",
                f"amix=inputs={len(input_paths)}:duration=longest:dropout_transition=0",
                "-vn",
                "-c:a",
                "aac",
                "-b:a",
                self._config.mix_bitrate,
                str(output_path),
            ]
        )

        self._run(command, cancel_token)
        return output_path

    def available_audio_encoders(self, cancel_token: CancellationToken) -> FrozenSet[str]:
        """ffmpeg -codecs の結果から音声エンコーダ名の一覧を返します。結果はキャッシュします。"""

        with self._codec_lock:
            if self._audio_encoders is None:
                command = [self._executable(self._config.ffmpeg_path, "ffmpeg"), "-hide_banner", "-codecs"]
                completed = self._run(command, cancel_token)
                self._audio_encoders = parse_codecs_output(completed.stdout or "")

            return self._audio_encoders

    def supports_audio_codec(self, codec: str, cancel_token: CancellationToken) -> bool:
        normalized = codec.strip().lower()
        if normalized == "copy":
            return True

        return AUDIO_ENCODERS.get(normalized, normalized) in self.available_audio_encoders(cancel_token)

    def _ffmpeg_base(self) -> List[str]:
        return [
            self._executable(self._config.ffmpeg_path, "ffmpeg"),
            "-hide_banner",
            "-nostdin",
            "-y",
            "-loglevel",
            "error",
        ]

    @staticmethod
    def _executable(configured_path: Optional[str], name: str) -> str:
        if configured_path:
            return configured_path

        found = shutil.which(name)
        if found is None:
            raise ToolExecutionError(
                f"{name} コマンドが見つかりません。"
                f" {name} をインストールして PATH を通すか、環境変数でフルパスを指定してください。"
            )

        return found

    def _run(self, command: List[str], cancel_token: CancellationToken) -> subprocess.CompletedProcess:
        """サブプロセスを実行し、完了・タイムアウト・キャンセルのいずれかまで待ちます。"""

        cancel_token.raise_if_cancelled()

        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
            )
        except OSError as ex:
            raise ToolExecutionError(f"failed to start {command[0]}: {ex}") from ex

        deadline = time.monotonic() + self._config.timeout_sec

        try:
            while True:
                try:
                    stdout, stderr = process.communicate(timeout=self._config.poll_interval_sec)
                    break
                except subprocess.TimeoutExpired:
                    if cancel_token.is_cancelled:
                        self._terminate(process)
                        raise JobCancelledError(cancel_token.reason or "cancelled")

                    if time.monotonic() > deadline:
                        self._terminate(process)
                        raise OperationTimeoutError(
                            f"{Path(command[0]).name} exceeded {self._config.timeout_sec}s"
                        )
        except BaseException:
            if process.poll() is None:
                self._terminate(process)
            raise

        if process.returncode != 0:
            message = (stderr or "").strip()[-2000:] or f"exit code {process.returncode}"
            raise ToolExecutionError(
                f"{Path(command[0]).name} failed: {message}",
                transient=is_transient_failure(message),
            )

        return subprocess.CompletedProcess(command, process.returncode, stdout, stderr)

    def _terminate(self, process: subprocess.Popen) -> None:
        """SIGTERM を送り、猶予時間内に終わらなければ SIGKILL します。"""

        process.terminate()
        try:
            process.communicate(timeout=self._config.kill_grace_period_sec)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()


def is_stream_copy_rejection(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(pattern in lowered for pattern in STREAM_COPY_REJECTION_PATTERNS)


def is_transient_failure(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(pattern in lowered for pattern in TRANSIENT_PATTERNS)


def parse_codecs_output(text: str) -> FrozenSet[str]:
    """ffmpeg -codecs の一覧から、エンコードできる音声コーデック名とエンコーダ名を集めます。

    各行は "DEA.L. aac  AAC (Advanced Audio Coding) (encoders: aac aac_at )" の形で、
    先頭6文字のフラグの2文字目が E、3文字目が A の行だけを対象にします。
    """

    names = set()
    in_table = False
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("-------"):
            in_table = True
            continue
        if in_table == False:
            continue

        fields = stripped.split(None, 2)
        if len(fields) < 2 or len(fields[0]) < 3:
            continue

        flags = fields[0]
        if flags[1] != "E" or flags[2] != "A":
            continue

        names.add(fields[1])
        encoders = _ENCODERS_PATTERN.search(stripped)
        if encoders is not None:
            names.update(encoders.group(1).split())

    return frozenset(names)


def parse_probe_payload(payload: dict) -> VideoMetadata:
    """ffprobe の -show_format -show_streams の結果を VideoMetadata に変換します。"""

    streams = payload.get("streams") or []
    format_info = payload.get("format") or {}

    duration = _to_float(format_info.get("duration"))
    if duration is None:
        stream_durations = [_to_float(stream.get("duration")) for stream in streams]
        known = [value for value in stream_durations if value is not None]
        duration = max(known) if len(known) > 0 else None

    video_streams = [stream for stream in streams if stream.get("codec_type") == "video"]
    width = None
    height = None
    if len(video_streams) > 0:
        width = _to_int(video_streams[0].get("width"))
        height = _to_int(video_streams[0].get("height"))

    codecs = tuple(str(stream["codec_name"]) for stream in streams if stream.get("codec_name"))

    return VideoMetadata(
        duration_seconds=duration,
        width=width,
        height=height,
        codecs=codecs,
        format_name=format_info.get("format_name"),
    )


def _to_float(value) -> Optional[float]:
    if value is None or value == "N/A":
        return None

    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value) -> Optional[int]:
    if value is None:
        return None

    try:
        return int(value)
    except (TypeError, ValueError):
        return None
