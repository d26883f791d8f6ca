import asyncio
import logging

from mailsync.controllers.adapters.base import ProtocolAdapter
from mailsync.exceptions import InvalidDataError
from mailsync.models.account import EmailAccount, ProviderKind


class AdapterRegistry:
    """One adapter per provider kind."""

    def __init__(self, adapters: list[ProtocolAdapter]) -> None:
        self._logger = logging.getLogger(__name__)
        self._adapters: dict[ProviderKind, ProtocolAdapter] = {}
        for adapter in adapters:
            if adapter.provider in self._adapters:
                raise ValueError(f"Duplicate adapter for provider {adapter.provider.value}")
            self._adapters[adapter.provider] = adapter

    def for_provider(self, provider: ProviderKind) -> ProtocolAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise InvalidDataError(f"No adapter registered for provider {provider.value}")
        return adapter

    def for_account(self, account: EmailAccount) -> ProtocolAdapter:
        return self.for_provider(account.provider)

    async def close(self) -> None:
        closing = [adapter.close() for adapter in self._adapters.values()]
        results = await asyncio.gather(*closing, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                self._logger.warning(f"Error closing adapter: {result}")
