import uuid

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Query

from mailsync.api.middlewares.authentication import get_current_user
from mailsync.api.payloads import APIError, ThreadData, ThreadListResponse
from mailsync.container import ApplicationContainer
from mailsync.controllers.email.email_controller import EmailController
from mailsync.repos.thread import ThreadFilters

router = APIRouter()


@router.get(
    "",
    response_model=ThreadListResponse,
    responses={401: {"model": APIError, "description": "Not authenticated"}},
    summary="List threads",
    description="Lists the current user's threads across all linked accounts, most recently active first",
)
@inject
async def list_threads(
    archived: bool | None = Query(None, description="Only archived (true) or only active (false) threads"),
    label: str | None = Query(None, description="Only threads carrying this label"),
    search: str | None = Query(None, min_length=1, max_length=255, description="Substring of the subject"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user),
    email_controller: EmailController = Depends(Provide[ApplicationContainer.controllers.email_controller]),
) -> ThreadListResponse:
    filters = ThreadFilters(
        archived=archived, label=label.lower() if label else None, search=search, limit=limit, offset=offset
    )
    threads = await email_controller.list_threads(user_id, filters)
    return ThreadListResponse(
        request_id=str(uuid.uuid4()),
        data=[ThreadData.from_model(thread) for thread in threads],
        next_offset=offset + limit if len(threads) == limit else None,
    )
