"""
Cache-aside read service.

Lookups try the cache first and fall back to the durable store, refilling
the cache on the way out. The cache only ever holds ciphertext; emails are
decrypted at this boundary, just before the record is returned.
"""

import asyncio
from typing import Awaitable, List, Optional, TypeVar

import structlog

from ..models.user import UserRecord
from .exceptions import CacheMissError, StoreTimeoutError
from .interfaces import PIICipher, UserCache, UserStore
from .metrics import MetricsCollector

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_REQUEST_TIMEOUT = 5.0


class UserService:
    """Synchronous, caller-facing operations on user records. Stateless."""

    def __init__(
        self,
        store: UserStore,
        cache: UserCache,
        cipher: PIICipher,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.cipher = cipher
        self.request_timeout = request_timeout
        self.metrics = metrics

    async def _bounded(self, operation: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(operation, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(timeout_seconds=self.request_timeout) from e

    def _decrypted(self, user: UserRecord) -> UserRecord:
        return user.with_email(self.cipher.decrypt(user.email))

    async def get_user(self, user_id: str) -> UserRecord:
        """
        Return one user with its email decrypted.

        Raises:
            NotFoundError: the id is in neither cache nor store
            StoreTimeoutError: the store lookup exceeded request_timeout
        """
        user = await self._get_cached(user_id)

        if user is None:
            user = await self._bounded(self.store.get_user_by_id(user_id))

            # Refill the cache with the still-encrypted record
            try:
                await self.cache.set(user_id, user)
            except Exception as e:
                if self.metrics:
                    self.metrics.record_cache_failure("set")
                logger.warning(
                    "Error setting user in cache",
                    user_id=user_id,
                    error=str(e),
                )

        return self._decrypted(user)

    async def _get_cached(self, user_id: str) -> Optional[UserRecord]:
        try:
            user = await self.cache.get(user_id)
        except CacheMissError:
            logger.debug("Cache miss", user_id=user_id)
            user = None
        except Exception as e:
            logger.warning("Error getting user from cache", user_id=user_id, error=str(e))
            user = None

        if self.metrics:
            self.metrics.record_cache_lookup(hit=user is not None)
        return user

    async def get_all_users(self) -> List[UserRecord]:
        """Full scan from the store. The cache is not consulted."""
        users = await self._bounded(self.store.get_all_users())
        return [self._decrypted(user) for user in users]

    async def create_user(self, user: UserRecord) -> UserRecord:
        """
        Encrypt and persist a new user, then cache it.

        Raises DuplicateError when the id already exists. Returns the stored
        (encrypted) record.
        """
        encrypted = user.with_email(self.cipher.encrypt(user.email))

        await self._bounded(self.store.create_user(encrypted))

        try:
            await self.cache.set(encrypted.cache_key, encrypted)
        except Exception as e:
            if self.metrics:
                self.metrics.record_cache_failure("set")
            logger.warning("Error setting user in cache", user_id=user.id, error=str(e))

        logger.info("User created", user_id=user.id)
        return encrypted

    async def delete_user(self, user_id: str) -> None:
        """Delete from the store, then evict from the cache (best effort)."""
        await self._bounded(self.store.delete_user(user_id))

        try:
            await self.cache.delete(user_id)
        except Exception as e:
            # The entry still expires through its TTL
            if self.metrics:
                self.metrics.record_cache_failure("delete")
            logger.warning("Error deleting user from cache", user_id=user_id, error=str(e))

        logger.info("User deleted", user_id=user_id)
