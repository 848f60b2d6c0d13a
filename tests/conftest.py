"""
Pytest configuration and shared fixtures.

Provides in-memory stand-ins for the durable store, the cache and the
ingestion source, plus a FastAPI test client wired to them.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Generator, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from userstream.config import PipelineSettings, SecuritySettings, Settings, StreamSettings
from userstream.core.crypto import EmailCipher
from userstream.core.exceptions import CacheError, CacheMissError, DuplicateError, NotFoundError
from userstream.core.metrics import MetricsCollector
from userstream.main import AppComponents, create_app
from userstream.models.user import UserRecord

TEST_ENCRYPTION_KEY = b"0123456789abcdef0123456789abcdef"


class InMemoryUserStore:
    """UserStore double with failure and latency injection per id."""

    def __init__(self) -> None:
        self.rows: Dict[int, UserRecord] = {}
        self.create_calls: List[int] = []
        self.list_calls: List[Tuple[int, int]] = []
        self.get_calls: List[str] = []
        self.failures: Dict[int, Exception] = {}
        self.write_delays: Dict[int, float] = {}
        self.read_delay: float = 0.0

    async def ping(self) -> bool:
        return True

    async def create_user(self, user: UserRecord) -> None:
        self.create_calls.append(user.id)
        delay = self.write_delays.get(user.id)
        if delay:
            await asyncio.sleep(delay)
        if user.id in self.failures:
            raise self.failures[user.id]
        if user.id in self.rows:
            raise DuplicateError(record_id=user.id)
        self.rows[user.id] = user.model_copy()

    async def get_user_by_id(self, user_id: str) -> UserRecord:
        self.get_calls.append(user_id)
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        try:
            row = self.rows.get(int(user_id))
        except ValueError:
            row = None
        if row is None:
            raise NotFoundError(record_id=user_id)
        return row.model_copy()

    async def get_all_users(self) -> List[UserRecord]:
        return [self.rows[key].model_copy() for key in sorted(self.rows)]

    async def list_users(self, limit: int, offset: int) -> List[UserRecord]:
        self.list_calls.append((limit, offset))
        ordered = [self.rows[key] for key in sorted(self.rows)]
        return [row.model_copy() for row in ordered[offset:offset + limit]]

    async def delete_user(self, user_id: str) -> None:
        if int(user_id) not in self.rows:
            raise NotFoundError(record_id=user_id)
        del self.rows[int(user_id)]


class InMemoryUserCache:
    """UserCache double storing JSON like the Redis adapter does."""

    def __init__(self) -> None:
        self.entries: Dict[str, str] = {}
        self.fail_get = False
        self.fail_set = False
        self.fail_delete = False
        self.get_calls = 0
        self.set_calls = 0

    async def ping(self) -> bool:
        if self.fail_get:
            raise CacheError("cache unavailable")
        return True

    async def get(self, key: str) -> UserRecord:
        self.get_calls += 1
        if self.fail_get:
            raise CacheError("cache unavailable")
        if key not in self.entries:
            raise CacheMissError(key)
        return UserRecord.model_validate_json(self.entries[key])

    async def set(self, key: str, user: UserRecord) -> None:
        self.set_calls += 1
        if self.fail_set:
            raise CacheError("cache unavailable")
        self.entries[key] = user.model_dump_json()

    async def delete(self, key: str) -> None:
        if self.fail_delete:
            raise CacheError("cache unavailable")
        self.entries.pop(key, None)

    def cached_email(self, key: str) -> str:
        return json.loads(self.entries[key])["email"]


@dataclass
class FakeDelivery:
    body: Optional[bytes]


_END = object()


class InMemorySource:
    """
    IngestionSource double.

    With ``close_when_empty`` the subscription ends after the given payloads,
    like a queue whose channel was closed; otherwise it stays open until
    close() is called.
    """

    def __init__(self, payloads: Tuple[Optional[bytes], ...] = (), close_when_empty: bool = True) -> None:
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self.closed = False
        for payload in payloads:
            self._queue.put_nowait(FakeDelivery(payload))
        if close_when_empty:
            self._queue.put_nowait(_END)

    def push(self, payload: Optional[bytes]) -> None:
        self._queue.put_nowait(FakeDelivery(payload))

    async def subscribe(self) -> AsyncIterator[FakeDelivery]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_END)


def make_user(user_id: int, email: Optional[str] = None, **overrides: Any) -> Dict[str, Any]:
    """Wire form of a user record with all eight fields present."""
    user = {
        "id": user_id,
        "first_name": "John",
        "last_name": "Doe",
        "email": email if email is not None else f"user{user_id}@doe.com",
        "created_at": None,
        "deleted_at": None,
        "merged_at": None,
        "parent_user_id": 0,
    }
    user.update(overrides)
    return user


def make_batch(*user_ids: int) -> bytes:
    return json.dumps([make_user(user_id) for user_id in user_ids]).encode("utf-8")


@pytest.fixture
def user_factory() -> Callable[..., Dict[str, Any]]:
    return make_user


@pytest.fixture
def batch_factory() -> Callable[..., bytes]:
    return make_batch


@pytest.fixture
def source_factory() -> Callable[..., InMemorySource]:
    return InMemorySource


@pytest.fixture
def cipher() -> EmailCipher:
    return EmailCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def store() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def cache() -> InMemoryUserCache:
    return InMemoryUserCache()


@pytest.fixture
def metrics() -> MetricsCollector:
    """Collector on a private registry so tests never clash on metric names."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        log_level="DEBUG",
        security=SecuritySettings(encryption_key=TEST_ENCRYPTION_KEY.decode()),
        pipeline=PipelineSettings(enabled=True, buffer_size=5, error_buffer_size=10),
        stream=StreamSettings(page_size=10, interval_seconds=0),
    )


@pytest.fixture
def test_client(
    test_settings: Settings,
    store: InMemoryUserStore,
    cache: InMemoryUserCache,
    cipher: EmailCipher,
    metrics: MetricsCollector,
) -> Generator[TestClient, None, None]:
    """FastAPI test client running the full lifespan on in-memory adapters."""
    components = AppComponents(
        store=store,
        cache=cache,
        cipher=cipher,
        source=InMemorySource(close_when_empty=False),
    )
    app = create_app(settings=test_settings, components=components, metrics=metrics)

    with TestClient(app) as client:
        yield client
