"""
PostgreSQL durable store backed by an asyncpg connection pool.

The pool is safe for concurrent callers, so the ingestion pipeline and the
HTTP read path share one store instance.
"""

import asyncio
from typing import Any, List, Optional

import asyncpg
import structlog
from asyncpg import exceptions as pg_exc

from ..config import DatabaseSettings
from ..core.exceptions import DuplicateError, NotFoundError, TransientStoreError
from ..models.user import UserRecord

logger = structlog.get_logger(__name__)

COLUMNS = "id, first_name, last_name, email_address, created_at, deleted_at, merged_at, parent_user_id"

CREATE_TABLE = """
create table if not exists user_details (
  id bigint primary key,
  first_name text not null,
  last_name text not null,
  email_address text not null,
  created_at timestamptz,
  deleted_at timestamptz,
  merged_at timestamptz,
  parent_user_id bigint
)
"""


def _row_to_user(row: Any) -> UserRecord:
    return UserRecord(
        id=row["id"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        email=row["email_address"],
        created_at=row["created_at"],
        deleted_at=row["deleted_at"],
        merged_at=row["merged_at"],
        parent_user_id=row["parent_user_id"],
    )


def _parse_id(user_id: str) -> int:
    try:
        return int(user_id)
    except (TypeError, ValueError) as e:
        raise NotFoundError(record_id=str(user_id)) from e


class PostgresUserStore:
    """Implements the UserStore protocol on the user_details table."""

    def __init__(self, settings: DatabaseSettings) -> None:
        self.settings = settings
        self._pool: Optional[asyncpg.Pool] = None
        self._pool_lock = asyncio.Lock()

    async def connect(self) -> None:
        await self._get_pool()
        logger.info("Connected to PostgreSQL", min_size=self.settings.min_pool_size, max_size=self.settings.max_pool_size)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is None:
                try:
                    self._pool = await asyncpg.create_pool(
                        dsn=self.settings.url,
                        min_size=self.settings.min_pool_size,
                        max_size=self.settings.max_pool_size,
                    )
                except (OSError, asyncpg.PostgresError) as e:
                    raise TransientStoreError("database unavailable", details={"error": str(e)}) from e
        return self._pool

    async def migrate(self) -> None:
        """Create the user_details table if it does not exist."""
        pool = await self._get_pool()
        await pool.execute(CREATE_TABLE)
        logger.info("Database migration applied", table="user_details")

    async def ping(self) -> bool:
        pool = await self._get_pool()
        return await pool.fetchval("select 1") == 1

    async def create_user(self, user: UserRecord) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                f"insert into user_details ({COLUMNS}) values ($1, $2, $3, $4, $5, $6, $7, $8)",
                user.id,
                user.first_name,
                user.last_name,
                user.email,
                user.created_at,
                user.deleted_at,
                user.merged_at,
                user.parent_user_id,
            )
        except pg_exc.UniqueViolationError as e:
            raise DuplicateError(record_id=user.id) from e
        except asyncpg.PostgresError as e:
            raise TransientStoreError("failed to insert user", details={"id": user.id, "error": str(e)}) from e

    async def get_user_by_id(self, user_id: str) -> UserRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {COLUMNS} from user_details where id = $1",
            _parse_id(user_id),
        )
        if row is None:
            raise NotFoundError(record_id=str(user_id))
        return _row_to_user(row)

    async def get_all_users(self) -> List[UserRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(f"select {COLUMNS} from user_details order by id")
        return [_row_to_user(row) for row in rows]

    async def list_users(self, limit: int, offset: int) -> List[UserRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {COLUMNS} from user_details order by id limit $1 offset $2",
            limit,
            offset,
        )
        return [_row_to_user(row) for row in rows]

    async def delete_user(self, user_id: str) -> None:
        pool = await self._get_pool()
        status = await pool.execute("delete from user_details where id = $1", _parse_id(user_id))
        # asyncpg returns the command tag, e.g. "DELETE 1"
        if status.rsplit(" ", 1)[-1] == "0":
            raise NotFoundError(record_id=str(user_id))
