"""
Capability interfaces for the external collaborators.

The pipeline and the read services depend only on these protocols, so the
PostgreSQL, Redis and RabbitMQ adapters can be swapped for test doubles.
Implementations must be safe for concurrent callers: the ingestion pipeline
and the HTTP read path share the same handles.
"""

from typing import AsyncIterator, List, Optional, Protocol

from ..models.user import UserRecord


class Delivery(Protocol):
    """A single unit delivered by the ingestion source."""

    @property
    def body(self) -> Optional[bytes]: ...


class IngestionSource(Protocol):
    """Ordered, at-least-once delivery channel. Ends when the source closes."""

    def subscribe(self) -> AsyncIterator[Delivery]: ...

    async def close(self) -> None: ...


class QueuePublisher(Protocol):
    """Producer side of the delivery channel."""

    async def publish(self, data: bytes) -> None: ...

    async def close(self) -> None: ...


class UserStore(Protocol):
    """
    Durable source of truth.

    Raises NotFoundError for missing ids and DuplicateError when the id
    uniqueness constraint is violated.
    """

    async def create_user(self, user: UserRecord) -> None: ...

    async def get_user_by_id(self, user_id: str) -> UserRecord: ...

    async def get_all_users(self) -> List[UserRecord]: ...

    async def list_users(self, limit: int, offset: int) -> List[UserRecord]: ...

    async def delete_user(self, user_id: str) -> None: ...


class UserCache(Protocol):
    """Key-value cache with a TTL fixed at construction. Raises CacheError subclasses."""

    async def get(self, key: str) -> UserRecord: ...

    async def set(self, key: str, user: UserRecord) -> None: ...

    async def delete(self, key: str) -> None: ...


class PIICipher(Protocol):
    """Fallible encrypt/decrypt capability for the email field."""

    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, data: str) -> str: ...
