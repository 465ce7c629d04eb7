from __future__ import annotations

from abc import ABC, abstractmethod


class StorageService(ABC):
    @abstractmethod
    async def upload_bytes(self, object_name: str, content: bytes, content_type: str) -> str:
        """Store ``content`` under ``object_name`` and return the key."""
        raise NotImplementedError

    @abstractmethod
    def generate_presigned_url(self, object_name: str, expires_in: int) -> str:
        raise NotImplementedError
