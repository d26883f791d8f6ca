"""
Accounts router: link, list, disable, remove and sync mailboxes.
"""

import logging
import uuid
from uuid import UUID

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Path

from mailsync.api.middlewares.authentication import get_current_user, verify_csrf
from mailsync.api.payloads import (
    AccountData,
    AccountListResponse,
    AccountResponse,
    APIError,
    DeleteAccountResponse,
    LinkAccountRequest,
    SyncReportData,
    SyncResponse,
)
from mailsync.container import ApplicationContainer
from mailsync.controllers.account.account_controller import AccountController

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get(
    "",
    response_model=AccountListResponse,
    responses={401: {"model": APIError, "description": "Not authenticated"}},
    summary="List accounts",
    description="Lists the mailboxes linked by the current user, with their sync health",
)
@inject
async def list_accounts(
    user_id: str = Depends(get_current_user),
    account_controller: AccountController = Depends(Provide[ApplicationContainer.controllers.account_controller]),
) -> AccountListResponse:
    accounts = await account_controller.list_accounts(user_id)
    return AccountListResponse(
        request_id=str(uuid.uuid4()), data=[AccountData.from_overview(overview) for overview in accounts]
    )


@router.post(
    "",
    response_model=AccountResponse,
    status_code=201,
    responses={
        400: {"model": APIError, "description": "Invalid credentials or settings"},
        401: {"model": APIError, "description": "Provider rejected the credentials"},
        403: {"model": APIError, "description": "Invalid CSRF token"},
        502: {"model": APIError, "description": "Provider error"},
        503: {"model": APIError, "description": "Provider unreachable"},
    },
    summary="Link an account",
    description="Links a Gmail, Outlook or IMAP/SMTP mailbox. The credentials are verified before anything is kept.",
)
@inject
async def link_account(
    payload: LinkAccountRequest,
    user_id: str = Depends(verify_csrf),
    account_controller: AccountController = Depends(Provide[ApplicationContainer.controllers.account_controller]),
) -> AccountResponse:
    account = await account_controller.link_account(user_id, payload.provider, payload.to_link())
    return AccountResponse(request_id=str(uuid.uuid4()), data=AccountData.from_model(account))


@router.post(
    "/{account_id}/disable",
    response_model=AccountResponse,
    responses={
        403: {"model": APIError, "description": "Invalid CSRF token"},
        404: {"model": APIError, "description": "Account not found"},
    },
    summary="Disable an account",
    description="Stops syncing and sending for the account. Stored mail is kept.",
)
@inject
async def disable_account(
    account_id: UUID = Path(..., examples=["a3ec500d-126b-4532-a632-7808721b3732"]),
    user_id: str = Depends(verify_csrf),
    account_controller: AccountController = Depends(Provide[ApplicationContainer.controllers.account_controller]),
) -> AccountResponse:
    account = await account_controller.disable_account(user_id, account_id)
    return AccountResponse(request_id=str(uuid.uuid4()), data=AccountData.from_model(account))


@router.delete(
    "/{account_id}",
    response_model=DeleteAccountResponse,
    responses={
        403: {"model": APIError, "description": "Invalid CSRF token"},
        404: {"model": APIError, "description": "Account not found"},
    },
    summary="Remove an account",
    description="Deletes the account together with its messages and send counters",
)
@inject
async def remove_account(
    account_id: UUID = Path(..., examples=["a3ec500d-126b-4532-a632-7808721b3732"]),
    user_id: str = Depends(verify_csrf),
    account_controller: AccountController = Depends(Provide[ApplicationContainer.controllers.account_controller]),
) -> DeleteAccountResponse:
    await account_controller.remove_account(user_id, account_id)
    return DeleteAccountResponse(request_id=str(uuid.uuid4()))


@router.post(
    "/{account_id}/sync",
    response_model=SyncResponse,
    responses={
        400: {"model": APIError, "description": "Sync disabled for the account"},
        403: {"model": APIError, "description": "Invalid CSRF token"},
        404: {"model": APIError, "description": "Account not found"},
        502: {"model": APIError, "description": "Provider error"},
        503: {"model": APIError, "description": "Provider unreachable"},
    },
    summary="Sync now",
    description="Runs a sync of the account immediately, unless one is already running",
)
@inject
async def sync_account(
    account_id: UUID = Path(..., examples=["a3ec500d-126b-4532-a632-7808721b3732"]),
    user_id: str = Depends(verify_csrf),
    account_controller: AccountController = Depends(Provide[ApplicationContainer.controllers.account_controller]),
) -> SyncResponse:
    report = await account_controller.sync_now(user_id, account_id)
    if report is None:
        logger.info(f"Sync already running for account {account_id}")
        return SyncResponse(request_id=str(uuid.uuid4()), already_running=True)
    return SyncResponse(request_id=str(uuid.uuid4()), data=SyncReportData.from_report(report))
