import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

from mailsync.exceptions import AuthExpiredError, InvalidDataError, PermanentProtocolError, TransientNetworkError
from mailsync.models.account import ProviderKind
from settings import settings

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
MICROSOFT_SCOPES = "offline_access https://graph.microsoft.com/Mail.ReadWrite https://graph.microsoft.com/Mail.Send"


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: int
    refresh_token: str | None = None


class OAuthTokenClient:
    """Talks to the Google and Microsoft OAuth2 token endpoints."""

    def __init__(self) -> None:
        self._logger = logging.getLogger(__name__)
        self._http_session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()

    async def init_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._http_session is None or self._http_session.closed:
                timeout = aiohttp.ClientTimeout(total=settings.oauth.http_timeout)
                self._http_session = aiohttp.ClientSession(timeout=timeout)
            return self._http_session

    async def close_session(self) -> None:
        if self._http_session:
            await self._http_session.close()
            self._http_session = None

    async def refresh(self, provider: ProviderKind, refresh_token: str) -> TokenGrant:
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        return await self._request_token(provider, data)

    async def exchange_code(self, provider: ProviderKind, code: str, redirect_uri: str | None = None) -> TokenGrant:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or settings.oauth.redirect_uri,
        }
        return await self._request_token(provider, data)

    def _endpoint(self, provider: ProviderKind) -> tuple[str, dict[str, str]]:
        if provider is ProviderKind.gmail:
            return GOOGLE_TOKEN_URL, {
                "client_id": settings.oauth.google_client_id,
                "client_secret": settings.oauth.google_client_secret,
            }
        if provider is ProviderKind.outlook:
            return MICROSOFT_TOKEN_URL.format(tenant=settings.oauth.microsoft_tenant), {
                "client_id": settings.oauth.microsoft_client_id,
                "client_secret": settings.oauth.microsoft_client_secret,
                "scope": MICROSOFT_SCOPES,
            }
        raise InvalidDataError(f"Provider {provider.value} does not use OAuth2")

    async def _request_token(self, provider: ProviderKind, data: dict[str, str]) -> TokenGrant:
        url, client_fields = self._endpoint(provider)
        session = await self.init_session()

        try:
            async with session.post(url, data={**data, **client_fields}) as response:
                payload: dict[str, Any] = await response.json(content_type=None) or {}
                status = response.status
        except asyncio.TimeoutError:
            raise TransientNetworkError(f"Timeout refreshing {provider.value} token")
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Network error refreshing {provider.value} token: {e}")
        except ValueError as e:
            raise PermanentProtocolError(f"Malformed token response from {provider.value}: {e}")

        if status == 429 or status >= 500:
            raise TransientNetworkError(f"{provider.value} token endpoint returned {status}")
        if status >= 400:
            error = payload.get("error", "unknown_error")
            if error == "invalid_grant":
                # Refresh token revoked or expired. Only re-linking the account fixes this.
                raise AuthExpiredError(f"{provider.value} refresh token was revoked", provider=provider.value)
            raise PermanentProtocolError(f"{provider.value} token endpoint rejected the request: {error}")

        access_token = payload.get("access_token")
        if not access_token:
            raise PermanentProtocolError(f"{provider.value} token response has no access_token")

        self._logger.debug(f"Obtained {provider.value} access token")
        return TokenGrant(
            access_token=access_token,
            expires_in=int(payload.get("expires_in", 3600)),
            refresh_token=payload.get("refresh_token"),
        )
