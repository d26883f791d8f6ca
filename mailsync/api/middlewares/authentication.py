import hmac
from typing import Annotated

from fastapi import Depends, Request

from mailsync.exceptions import ActionForbiddenError, AuthError
from settings import settings


async def get_current_user(request: Request) -> str:
    """
    FastAPI dependency returning the caller's user id.

    Authentication happens upstream; the gateway forwards the authenticated
    user in a trusted header. Requests without it are rejected.

    Raises:
        AuthError: If the header is missing or blank
    """
    user_id = (request.headers.get(settings.api.user_header) or "").strip()
    if not user_id:
        raise AuthError("Authentication required")
    return user_id


async def verify_csrf(request: Request, user_id: Annotated[str, Depends(get_current_user)]) -> str:
    """
    FastAPI dependency for state-changing routes: the CSRF header must match the CSRF cookie.

    Returns:
        The authenticated user id, so routes can depend on this alone
    """
    header = request.headers.get(settings.api.csrf_header) or ""
    cookie = request.cookies.get(settings.api.csrf_cookie) or ""
    if not header or not cookie or not hmac.compare_digest(header, cookie):
        raise ActionForbiddenError("Invalid CSRF token", user=user_id)
    return user_id
