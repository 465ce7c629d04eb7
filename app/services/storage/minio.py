from __future__ import annotations

import asyncio
import io
import logging
from datetime import timedelta

from minio import Minio
from minio.error import S3Error

from app.config import settings
from app.core.exceptions import BusinessError
from app.i18n.codes import ErrorCode
from app.services.storage.base import StorageService

logger = logging.getLogger(__name__)


class MinioStorageService(StorageService):
    def __init__(self) -> None:
        endpoint = settings.MINIO_ENDPOINT
        access_key = settings.MINIO_ACCESS_KEY
        secret_key = settings.MINIO_SECRET_KEY
        use_ssl = settings.MINIO_USE_SSL
        if not endpoint or not access_key or not secret_key or use_ssl is None:
            raise RuntimeError("MinIO settings are not set")
        bucket = settings.MINIO_BUCKET
        if not bucket:
            raise RuntimeError("MINIO_BUCKET is not set")
        self._bucket = bucket
        self._client = Minio(
            endpoint=endpoint,
            access_key=access_key,
            secret_key=secret_key,
            secure=bool(use_ssl),
        )

    async def upload_bytes(self, object_name: str, content: bytes, content_type: str) -> str:
        try:
            await asyncio.to_thread(
                self._client.put_object,
                self._bucket,
                object_name,
                io.BytesIO(content),
                len(content),
                content_type=content_type or "application/octet-stream",
            )
        except S3Error as exc:
            logger.error("MinIO upload failed for %s: %s", object_name, exc)
            raise BusinessError(ErrorCode.FILE_UPLOAD_FAILED) from exc
        return object_name

    def generate_presigned_url(self, object_name: str, expires_in: int) -> str:
        return self._client.presigned_get_object(
            bucket_name=self._bucket,
            object_name=object_name,
            expires=timedelta(seconds=expires_in),
        )
