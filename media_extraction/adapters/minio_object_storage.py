from pathlib import Path
from typing import Optional
from urllib.parse import quote

from minio import Minio
from minio.error import S3Error

from media_extraction.application.ports import ObjectStoragePort
from media_extraction.domain.errors import StorageError


class MinioObjectStorageAdapter(ObjectStoragePort):
    """MinIOを利用するオブジェクトストレージアダプターです。"""

    def __init__(
        self,
        endpoint: str,
        access_key: str,
        secret_key: str,
        secure: bool,
        public_base_url: Optional[str] = None,
        client: Optional[Minio] = None,
    ) -> None:
        if client is None:
            client = Minio(
                endpoint=endpoint,
                access_key=access_key,
                secret_key=secret_key,
                secure=secure,
            )

        self._client = client

        if public_base_url is None or public_base_url.strip() == "":
            public_base_url = "{0}://{1}".format("https" if secure else "http", endpoint)
        self._public_base_url = public_base_url.rstrip("/")

        self._known_buckets = set()

    def upload_file(
        self,
        local_path: Path,
        bucket: str,
        key: str,
        content_type: Optional[str] = None,
    ) -> str:
        """ローカルファイルをアップロードし、公開ロケータを返します。"""

        try:
            self._ensure_bucket_exists(bucket)

            if content_type is None:
                self._client.fput_object(
                    bucket_name=bucket,
                    object_name=key,
                    file_path=str(local_path),
                )
            else:
                self._client.fput_object(
                    bucket_name=bucket,
                    object_name=key,
                    file_path=str(local_path),
                    content_type=content_type,
                )
        except S3Error as ex:
            raise StorageError(f"failed to upload {key}: {ex.code} {ex.message}") from ex
        except OSError as ex:
            raise StorageError(f"failed to read {local_path.name} for upload: {ex}") from ex

        return self.locator_for(bucket, key)

    def locator_for(self, bucket: str, key: str) -> str:
        """公開ベースURL・バケット・キーからロケータを組み立てます。"""

        return "{0}/{1}/{2}".format(self._public_base_url, quote(bucket), quote(key, safe="/"))

    def _ensure_bucket_exists(self, bucket: str) -> None:
        """バケットの存在を確認し、なければ作成します。"""

        # 同一プロセス内では確認済みのバケットを再確認しない
        if bucket in self._known_buckets:
            return

        exists = self._client.bucket_exists(bucket)
        if exists == False:
            try:
                self._client.make_bucket(bucket)
            except S3Error as ex:
                # 並列アップロードで先に作成された場合
                if ex.code not in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                    raise

        self._known_buckets.add(bucket)
