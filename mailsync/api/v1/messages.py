"""
Outbound router: send mail, check deliverability, read send counters.
"""

import logging
import uuid
from uuid import UUID

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Path

from mailsync.api.middlewares.authentication import get_current_user, verify_csrf
from mailsync.api.payloads import (
    APIError,
    DeliverabilityCheckRequest,
    DeliverabilityResponse,
    RateLimitsData,
    RateLimitsResponse,
    SendMessageRequest,
    SendMessageResponse,
)
from mailsync.container import ApplicationContainer
from mailsync.controllers.email.email_controller import EmailController

logger = logging.getLogger(__name__)
accounts_router = APIRouter()
deliverability_router = APIRouter()


@accounts_router.post(
    "/{account_id}/messages/send",
    response_model=SendMessageResponse,
    responses={
        400: {"model": APIError, "description": "Invalid message"},
        403: {"model": APIError, "description": "Invalid CSRF token"},
        404: {"model": APIError, "description": "Account or replied message not found"},
        409: {"model": APIError, "description": "Account disabled"},
        422: {"model": APIError, "description": "Spam score at or above the hard ceiling"},
        429: {"model": APIError, "description": "Hourly or daily send limit reached"},
        502: {"model": APIError, "description": "Provider rejected the message"},
        504: {"model": APIError, "description": "Send outcome unknown; confirmed on the next sync"},
    },
    summary="Send a message",
    description=(
        "Sends through the account's provider. The send is counted against the account's limits, "
        "scored for spam and stored in its thread."
    ),
)
@inject
async def send_message(
    payload: SendMessageRequest,
    account_id: UUID = Path(..., examples=["a3ec500d-126b-4532-a632-7808721b3732"]),
    user_id: str = Depends(verify_csrf),
    email_controller: EmailController = Depends(Provide[ApplicationContainer.controllers.email_controller]),
) -> SendMessageResponse:
    result = await email_controller.send_email(
        user_id,
        account_id,
        payload.to_outgoing(),
        reply_to_message_uuid=payload.reply_to_message_id,
        timeout=payload.timeout_seconds,
    )
    return SendMessageResponse.from_result(str(uuid.uuid4()), result)


@accounts_router.get(
    "/{account_id}/rate-limits",
    response_model=RateLimitsResponse,
    responses={404: {"model": APIError, "description": "Account not found"}},
    summary="Get send limits",
    description="Current hourly and daily send counts of the account",
)
@inject
async def get_rate_limits(
    account_id: UUID = Path(..., examples=["a3ec500d-126b-4532-a632-7808721b3732"]),
    user_id: str = Depends(get_current_user),
    email_controller: EmailController = Depends(Provide[ApplicationContainer.controllers.email_controller]),
) -> RateLimitsResponse:
    usage = await email_controller.get_rate_limits(user_id, account_id)
    return RateLimitsResponse(request_id=str(uuid.uuid4()), data=RateLimitsData.from_usage(usage))


@deliverability_router.post(
    "/check",
    response_model=DeliverabilityResponse,
    responses={401: {"model": APIError, "description": "Not authenticated"}},
    summary="Check deliverability",
    description="Scores a draft for spam and validates recipient addresses. Nothing is sent or stored.",
)
@inject
async def check_deliverability(
    payload: DeliverabilityCheckRequest,
    user_id: str = Depends(get_current_user),
    email_controller: EmailController = Depends(Provide[ApplicationContainer.controllers.email_controller]),
) -> DeliverabilityResponse:
    report = email_controller.check_deliverability(
        str(payload.from_email), payload.subject, payload.html_body, payload.text_body, payload.recipients
    )
    logger.debug(f"Deliverability check for user {user_id}: score {report.spam.score}")
    return DeliverabilityResponse.from_report(str(uuid.uuid4()), report)
