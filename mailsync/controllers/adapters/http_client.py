import asyncio
import logging
from typing import Any
from urllib.parse import urlsplit

import aiohttp

from mailsync.controllers.adapters.circuit_breaker import CircuitBreakerRegistry
from mailsync.exceptions import AuthExpiredError, PermanentProtocolError, TransientNetworkError


class ProviderHttpClient:
    """JSON-over-HTTPS client for provider REST APIs.

    Maps HTTP failures onto the engine's error taxonomy and routes every call
    through the host's circuit breaker.
    """

    def __init__(self, base_url: str, breakers: CircuitBreakerRegistry, timeout: float) -> None:
        self._logger = logging.getLogger(__name__)
        self._base_url = base_url.rstrip("/")
        self._breakers = breakers
        self._timeout = timeout
        self._http_session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()

    async def init_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._http_session is None or self._http_session.closed:
                self._http_session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout))
            return self._http_session

    async def close_session(self) -> None:
        if self._http_session:
            await self._http_session.close()
            self._http_session = None

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("https://") or path_or_url.startswith("http://"):
            return path_or_url
        return f"{self._base_url}/{path_or_url.lstrip('/')}"

    async def request(
        self,
        method: str,
        path_or_url: str,
        token: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Perform an authenticated request and return the decoded JSON body ({} when empty)."""
        url = self._url(path_or_url)
        host = urlsplit(url).netloc
        request_headers = {"Authorization": f"Bearer {token}", **(headers or {})}
        session = await self.init_session()

        async with self._breakers.get(host).guard():
            try:
                async with session.request(method, url, params=params, json=json, headers=request_headers) as response:
                    if response.status >= 400:
                        body = await response.text()
                        self._raise_for_status(response.status, method, url, body)
                    if response.status == 204 or response.content_length == 0:
                        return {}
                    return await response.json(content_type=None) or {}
            except asyncio.TimeoutError:
                raise TransientNetworkError(f"Timeout calling {method} {url}")
            except (aiohttp.ContentTypeError, ValueError) as e:
                raise PermanentProtocolError(f"Malformed response from {method} {url}: {e}")
            except aiohttp.ClientError as e:
                raise TransientNetworkError(f"Network error calling {method} {url}: {e}")

    def _raise_for_status(self, status: int, method: str, url: str, body: str) -> None:
        description = f"{method} {url} returned {status}: {body[:500]}"
        if status == 401:
            raise AuthExpiredError(description)
        if status == 429 or status >= 500:
            raise TransientNetworkError(description)
        error = PermanentProtocolError(description)
        error.details["status"] = status
        raise error
