"""
Redis read-through cache for user records.

Values are the JSON form of a UserRecord whose email is already encrypted.
Every entry is written with the TTL given at construction.
"""

from typing import Optional

import redis.asyncio as redis
import structlog
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from ..config import CacheSettings
from ..core.exceptions import CacheError, CacheMissError
from ..models.user import UserRecord

logger = structlog.get_logger(__name__)


class RedisUserCache:
    """Implements the UserCache protocol. Every failure surfaces as a CacheError."""

    def __init__(self, settings: CacheSettings, client: Optional[redis.Redis] = None) -> None:
        self.ttl_seconds = settings.ttl_seconds
        self._client = client if client is not None else redis.from_url(
            settings.url,
            encoding="utf-8",
            decode_responses=True,
        )

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            raise CacheError("redis unreachable", details={"error": str(e)}) from e

    async def close(self) -> None:
        await self._client.aclose()

    async def get(self, key: str) -> UserRecord:
        try:
            value = await self._client.get(key)
        except RedisError as e:
            raise CacheError(f"failed to read key {key}", details={"error": str(e)}) from e

        if value is None:
            raise CacheMissError(key)

        try:
            return UserRecord.model_validate_json(value)
        except PydanticValidationError as e:
            raise CacheError(f"corrupt cache entry for key {key}") from e

    async def set(self, key: str, user: UserRecord) -> None:
        try:
            await self._client.set(key, user.model_dump_json(), ex=self.ttl_seconds)
        except RedisError as e:
            raise CacheError(f"failed to write key {key}", details={"error": str(e)}) from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as e:
            raise CacheError(f"failed to delete key {key}", details={"error": str(e)}) from e
