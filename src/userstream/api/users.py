"""
User record API endpoints.

- GET    /users          - all users, emails decrypted
- GET    /users/sse      - paginated server-sent event stream of all users
- GET    /users/{id}     - one user through the cache
- POST   /users          - create a user (409 on duplicate id)
- DELETE /users/{id}     - delete a user (204 also when already gone)
"""

import asyncio
import json
from typing import AsyncIterator, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import StreamingResponse

from ..core.exceptions import NotFoundError, UserStreamException
from ..core.pagination import PaginationService
from ..core.user_service import UserService
from ..models.user import UserRecord, UserResponse

logger = structlog.get_logger(__name__)

router = APIRouter()

END_OF_STREAM = "data: END\n\n"


def get_user_service(request: Request) -> UserService:
    """Dependency to get the user service from app state."""
    return request.app.state.user_service


def get_pagination_service(request: Request) -> PaginationService:
    """Dependency to get the pagination service from app state."""
    return request.app.state.pagination_service


@router.get(
    "/users",
    response_model=UserResponse,
    summary="List all users",
)
async def get_all_users(service: UserService = Depends(get_user_service)) -> UserResponse:
    users = await service.get_all_users()
    return UserResponse(
        status_code=status.HTTP_200_OK,
        message="all users",
        data=[user.model_dump(mode="json") for user in users],
    )


@router.get(
    "/users/sse",
    summary="Stream all users page by page",
    description="""
    Server-sent events stream. Each event carries one page as a JSON array;
    the stream ends with a final `data: END` event once the last page has
    been sent. Pages are 0-based and ordered by user id.
    """,
)
async def stream_users(
    request: Request,
    limit: Optional[int] = Query(default=None, ge=1, le=1000, description="Users per page"),
    pagination: PaginationService = Depends(get_pagination_service),
) -> StreamingResponse:
    settings = request.app.state.settings
    page_size = limit or settings.stream.page_size
    interval = settings.stream.interval_seconds

    async def events() -> AsyncIterator[str]:
        try:
            async for page in pagination.iter_pages(page_size):
                payload = json.dumps([user.model_dump(mode="json") for user in page.records])
                yield f"data: {payload}\n\n"
                if not page.is_terminal and interval > 0:
                    await asyncio.sleep(interval)
        except UserStreamException as e:
            logger.error("User stream failed", error=str(e), error_code=e.error_code)
            yield f"event: error\ndata: {json.dumps({'error': e.error_code, 'message': str(e)})}\n\n"
            return
        yield END_OF_STREAM

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Access-Control-Allow-Origin": "*"},
    )


@router.get(
    "/users/{user_id}",
    response_model=UserResponse,
    summary="Get one user",
    responses={404: {"description": "User not found"}, 408: {"description": "Store timeout"}},
)
async def get_user(user_id: int, service: UserService = Depends(get_user_service)) -> UserResponse:
    user = await service.get_user(str(user_id))
    return UserResponse(
        status_code=status.HTTP_200_OK,
        message="success",
        data=user.model_dump(mode="json"),
    )


@router.post(
    "/users",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a user",
    responses={409: {"description": "User already exists"}, 408: {"description": "Store timeout"}},
)
async def create_user(user: UserRecord, service: UserService = Depends(get_user_service)) -> UserResponse:
    await service.create_user(user)
    return UserResponse(
        status_code=status.HTTP_201_CREATED,
        message="data created successfully",
        data={"id": user.id},
    )


@router.delete(
    "/users/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a user",
)
async def delete_user(user_id: int, service: UserService = Depends(get_user_service)) -> Response:
    try:
        await service.delete_user(str(user_id))
    except NotFoundError:
        logger.info("Requested user not found or already deleted", user_id=user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
