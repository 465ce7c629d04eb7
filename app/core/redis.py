from __future__ import annotations

import json
import logging
from typing import Any, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[Redis] = None


def _get_redis_url() -> str:
    redis_url = settings.REDIS_URL
    if not redis_url:
        raise RuntimeError("REDIS_URL is not set")
    return redis_url


def get_redis_client() -> Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(_get_redis_url(), decode_responses=True)
    return _redis_client


def transcription_channel(user_id: str) -> str:
    return f"transcriptions:{user_id}"


async def publish_message(channel: str, message: str) -> None:
    client = get_redis_client()
    await client.publish(channel, message)


async def publish_transcription_event(user_id: str, payload: dict[str, Any]) -> None:
    """Best-effort status push; a Redis outage never fails the caller."""
    try:
        await publish_message(transcription_channel(user_id), json.dumps(payload, default=str))
    except (RedisError, RuntimeError, OSError) as exc:
        logger.warning("Failed to publish transcription event for %s: %s", user_id, exc)
