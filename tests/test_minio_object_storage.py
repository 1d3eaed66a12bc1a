from pathlib import Path
from unittest.mock import MagicMock

import pytest
from minio.error import S3Error

from media_extraction.adapters.minio_object_storage import MinioObjectStorageAdapter
from media_extraction.domain.errors import StorageError


def make_s3_error(code: str) -> S3Error:
    return S3Error(
        code=code,
        message=f"{code} message",
        resource="artifacts",
        request_id="request-id",
        host_id="host-id",
        response=MagicMock(),
    )


def make_adapter(client, public_base_url=None):
    return MinioObjectStorageAdapter(
        endpoint="minio:9000",
        access_key="access",
        secret_key="secret",
        secure=False,
        public_base_url=public_base_url,
        client=client,
    )


class TestMinioObjectStorageAdapter:
    """MinIOアダプターのテスト"""

    def test_upload_creates_bucket_once(self):
        client = MagicMock()
        client.bucket_exists.return_value = False
        adapter = make_adapter(client)

        adapter.upload_file(Path("/tmp/a.jpg"), "artifacts", "job-1/frames/a.jpg", "image/jpeg")
        adapter.upload_file(Path("/tmp/b.jpg"), "artifacts", "job-1/frames/b.jpg", "image/jpeg")

        client.make_bucket.assert_called_once_with("artifacts")
        assert client.bucket_exists.call_count == 1
        client.fput_object.assert_called_with(
            bucket_name="artifacts",
            object_name="job-1/frames/b.jpg",
            file_path="/tmp/b.jpg",
            content_type="image/jpeg",
        )

    def test_bucket_created_concurrently_is_tolerated(self):
        client = MagicMock()
        client.bucket_exists.return_value = False
        client.make_bucket.side_effect = make_s3_error("BucketAlreadyOwnedByYou")

        locator = make_adapter(client).upload_file(Path("/tmp/a.jpg"), "artifacts", "k/a.jpg")

        assert locator == "http://minio:9000/artifacts/k/a.jpg"

    def test_s3_error_becomes_storage_error(self):
        client = MagicMock()
        client.bucket_exists.return_value = True
        client.fput_object.side_effect = make_s3_error("AccessDenied")

        with pytest.raises(StorageError) as exc_info:
            make_adapter(client).upload_file(Path("/tmp/a.jpg"), "artifacts", "k/a.jpg")

        assert exc_info.value.retryable == True

    def test_missing_local_file_becomes_storage_error(self):
        client = MagicMock()
        client.bucket_exists.return_value = True
        client.fput_object.side_effect = FileNotFoundError("/tmp/a.jpg")

        with pytest.raises(StorageError):
            make_adapter(client).upload_file(Path("/tmp/a.jpg"), "artifacts", "k/a.jpg")

    def test_locator_uses_public_base_url(self):
        adapter = make_adapter(MagicMock(), public_base_url="https://cdn.example.com/")

        assert adapter.locator_for("artifacts", "job 1/frames/a.jpg") == (
            "https://cdn.example.com/artifacts/job%201/frames/a.jpg"
        )
