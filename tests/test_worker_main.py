import json
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeMediaTool, FakeObjectStorage, FakeSourceFetcher
from media_extraction import worker_main

REQUIRED_ENV = {
    "MINIO_ENDPOINT": "minio:9000",
    "MINIO_ACCESS_KEY": "access",
    "MINIO_SECRET_KEY": "secret",
    "JOB_OUTPUT_BUCKET": "artifacts",
}


@pytest.fixture
def env(monkeypatch, tmp_path):
    for name, value in REQUIRED_ENV.items():
        monkeypatch.setenv(name, value)
    monkeypatch.setenv("WORK_DIR", str(tmp_path / "work"))
    return monkeypatch


class TestEnvHelpers:
    """環境変数の読み取りのテスト"""

    def test_required_env_missing(self, monkeypatch):
        monkeypatch.delenv("MINIO_ENDPOINT", raising=False)

        with pytest.raises(RuntimeError):
            worker_main._get_required_env("MINIO_ENDPOINT")

    @pytest.mark.parametrize("value,expected", [("1", True), ("Yes", True), ("off", False), ("false", False)])
    def test_bool_env(self, monkeypatch, value, expected):
        monkeypatch.setenv("MINIO_SECURE", value)

        assert worker_main._get_env_bool("MINIO_SECURE", False) == expected

    def test_invalid_bool_env(self, monkeypatch):
        monkeypatch.setenv("MINIO_SECURE", "maybe")

        with pytest.raises(RuntimeError):
            worker_main._get_env_bool("MINIO_SECURE", False)

    def test_int_env_default_and_value(self, monkeypatch):
        monkeypatch.delenv("EXTRACTION_MAX_WORKERS", raising=False)
        assert worker_main._get_env_int("EXTRACTION_MAX_WORKERS", 3) == 3

        monkeypatch.setenv("EXTRACTION_MAX_WORKERS", "8")
        assert worker_main._get_env_int("EXTRACTION_MAX_WORKERS", 3) == 8

    def test_negative_int_env(self, monkeypatch):
        monkeypatch.setenv("EXTRACTION_MAX_RETRIES", "-1")

        with pytest.raises(RuntimeError):
            worker_main._get_env_int("EXTRACTION_MAX_RETRIES", 0)

    def test_float_env(self, monkeypatch):
        monkeypatch.setenv("TOOL_TIMEOUT_SEC", "12.5")

        assert worker_main._get_env_float("TOOL_TIMEOUT_SEC", 600.0) == 12.5


class TestMain:
    """エントリポイントのテスト"""

    def test_usage_without_arguments(self, capsys):
        assert worker_main.main([]) == 2
        assert "usage" in capsys.readouterr().err

    def test_runs_job_file(self, env, tmp_path, capsys):
        job_path = tmp_path / "job.json"
        job_path.write_text(
            json.dumps(
                {
                    "jobId": "job-cli",
                    "sourceUrl": "https://media.test/a.mp4",
                    "requests": [{"type": "frame_at", "timestamp": 2.0}],
                }
            ),
            encoding="utf-8",
        )
        storage = FakeObjectStorage()

        with patch.object(worker_main, "MinioObjectStorageAdapter", return_value=storage), patch.object(
            worker_main, "HttpSourceFetcher", return_value=FakeSourceFetcher()
        ), patch.object(worker_main, "FfmpegMediaTool", return_value=FakeMediaTool()):
            exit_code = worker_main.main([str(job_path)])

        lines = capsys.readouterr().out.splitlines()
        document = json.loads(next(line for line in lines if line.startswith("{")))

        assert exit_code == 0
        assert document["jobId"] == "job-cli"
        assert document["state"] == "completed"
        assert document["artifacts"][0]["artifactName"] == "frame_02_000.jpg"
        assert "artifacts/extractions/job-cli/frames/frame_02_000.jpg" in storage.objects

    def test_invalid_job_file(self, env, tmp_path, capsys):
        job_path = tmp_path / "job.json"
        job_path.write_text("{not json", encoding="utf-8")

        with patch.object(worker_main, "MinioObjectStorageAdapter", return_value=FakeObjectStorage()):
            exit_code = worker_main.main([str(job_path)])

        assert exit_code == 1
        assert "[ERROR] invalid job file" in capsys.readouterr().out

    def test_ffmpeg_codecs_flag_needs_no_storage_env(self, monkeypatch, capsys):
        """--ffmpeg-codecs は環境変数なしで音声エンコーダ一覧を表示する"""
        monkeypatch.delenv("MINIO_ENDPOINT", raising=False)
        tool = MagicMock()
        tool.available_audio_encoders.return_value = frozenset(["libmp3lame", "aac"])

        with patch.object(worker_main, "FfmpegMediaTool", return_value=tool):
            exit_code = worker_main.main(["--ffmpeg-codecs"])

        assert exit_code == 0
        assert json.loads(capsys.readouterr().out) == {"audioEncoders": ["aac", "libmp3lame"]}
