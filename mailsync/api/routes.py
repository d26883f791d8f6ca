from fastapi import APIRouter

from mailsync.api.v1.accounts import router as accounts_router
from mailsync.api.v1.messages import accounts_router as account_messages_router
from mailsync.api.v1.messages import deliverability_router
from mailsync.api.v1.threads import router as threads_router

api_router = APIRouter()

api_router.include_router(accounts_router, prefix="/accounts", tags=["accounts"])
api_router.include_router(account_messages_router, prefix="/accounts", tags=["messages"])
api_router.include_router(threads_router, prefix="/threads", tags=["threads"])
api_router.include_router(deliverability_router, prefix="/deliverability", tags=["deliverability"])
