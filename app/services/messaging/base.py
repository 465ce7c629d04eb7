from __future__ import annotations

from abc import ABC, abstractmethod


class MessagingService(ABC):
    @abstractmethod
    async def send_message(self, to: str, body: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def download_media(self, media_url: str) -> tuple[bytes, str]:
        """Fetch inbound media; returns (content, content_type)."""
        raise NotImplementedError
