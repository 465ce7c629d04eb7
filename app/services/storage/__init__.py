from __future__ import annotations

from app.services.storage.base import StorageService
from app.services.storage.factory import get_storage_service
from app.services.storage.minio import MinioStorageService

__all__ = ["StorageService", "MinioStorageService", "get_storage_service"]
