"""
Lookup of provider adapters keyed by provider identifier.
"""
import logging
from typing import Any, Optional

from api.services.integration_types import CallRecordingProvider, CrmProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registered call-recording and CRM adapters."""

    def __init__(self):
        self.call_recording: dict[str, CallRecordingProvider] = {}
        self.crm: dict[str, CrmProvider] = {}

    def register_call_provider(self, provider_id: str, adapter: CallRecordingProvider):
        self.call_recording[provider_id.upper()] = adapter
        logger.info(f"Registered call-recording provider {provider_id}")

    def register_crm_provider(self, provider_id: str, adapter: CrmProvider):
        self.crm[provider_id.upper()] = adapter
        logger.info(f"Registered CRM provider {provider_id}")

    def get_call_provider(self, provider_id: str) -> Optional[CallRecordingProvider]:
        return self.call_recording.get(provider_id.upper())

    def get_crm_provider(self, provider_id: str) -> Optional[CrmProvider]:
        return self.crm.get(provider_id.upper())

    def is_known(self, provider_id: str) -> bool:
        key = provider_id.upper()
        return key in self.call_recording or key in self.crm

    def validate_credentials(self, provider_id: str, credentials: dict[str, Any]) -> bool:
        """Ask the provider's adapter whether the credentials work. Unknown providers are invalid."""
        adapter = self.get_call_provider(provider_id) or self.get_crm_provider(provider_id)
        if adapter is None:
            logger.warning(f"Cannot validate credentials for unknown provider {provider_id}")
            return False
        return bool(adapter.validate_credentials(credentials))


# Singleton instance
_provider_registry: Optional[ProviderRegistry] = None


def get_provider_registry() -> ProviderRegistry:
    """Get singleton ProviderRegistry instance."""
    global _provider_registry
    if _provider_registry is None:
        _provider_registry = ProviderRegistry()
    return _provider_registry
