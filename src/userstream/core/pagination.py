"""
Paginated listing of the full record set.

Cursor convention: pages are 0-based and ordered by id, page P covers rows
[P * size, (P + 1) * size). Pages never overlap and leave no gaps. The store
is asked for one row more than the page size; getting at most ``size`` rows
back marks the page as terminal.
"""

import asyncio
from typing import AsyncIterator

import structlog

from ..models.user import Page
from .exceptions import StoreTimeoutError, ValidationError
from .interfaces import PIICipher, UserStore

logger = structlog.get_logger(__name__)

DEFAULT_REQUEST_TIMEOUT = 15.0


class PaginationService:
    """Stateless page walker. The caller owns the cursor."""

    def __init__(
        self,
        store: UserStore,
        cipher: PIICipher,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.store = store
        self.cipher = cipher
        self.request_timeout = request_timeout

    async def next_page(self, page_index: int, page_size: int) -> Page:
        if page_index < 0:
            raise ValidationError("page_index must be >= 0", details={"page_index": page_index})
        if page_size < 1:
            raise ValidationError("page_size must be >= 1", details={"page_size": page_size})

        offset = page_index * page_size
        try:
            rows = await asyncio.wait_for(
                self.store.list_users(page_size + 1, offset),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(timeout_seconds=self.request_timeout) from e

        is_terminal = len(rows) <= page_size
        records = [
            user.with_email(self.cipher.decrypt(user.email))
            for user in rows[:page_size]
        ]

        logger.debug(
            "Page served",
            page_index=page_index,
            page_size=page_size,
            records=len(records),
            is_terminal=is_terminal,
        )
        return Page(
            page_index=page_index,
            page_size=page_size,
            records=records,
            is_terminal=is_terminal,
        )

    async def iter_pages(self, page_size: int) -> AsyncIterator[Page]:
        """Yield pages from index 0 up to and including the terminal page."""
        page_index = 0
        while True:
            page = await self.next_page(page_index, page_size)
            yield page
            if page.is_terminal:
                return
            page_index += 1
