"""
E-signature integration modules

Provides adapters for the supported e-signature vendors behind one
interface, and the registry that selects an adapter by provider name.
"""

from app.core.config import Settings

from .base import (
    CallbackStatus,
    HttpSignatureProvider,
    NormalizedCallback,
    ProviderRegistry,
    ProviderSignResult,
    SignatureProvider,
    SignatureProviderType,
    SignRequest,
    map_vendor_status,
)
from .digio_adapter import DigioAdapter
from .docusign_adapter import DocuSignAdapter
from .emudhra_adapter import EmudhraAdapter


def build_provider_registry(settings: Settings) -> ProviderRegistry:
    """Instantiate an adapter for every enabled provider. Credentials were checked when settings loaded."""
    registry = ProviderRegistry()
    timeout = settings.esign_timeout_seconds
    for name in settings.enabled_esign_providers:
        if name == SignatureProviderType.DOCUSIGN.value:
            provider: SignatureProvider = DocuSignAdapter(
                base_url=settings.docusign_base_url,
                account_id=settings.docusign_account_id,
                access_token=settings.docusign_access_token,
                webhook_secret=settings.docusign_webhook_secret,
                timeout_seconds=timeout,
            )
        elif name == SignatureProviderType.DIGIO.value:
            provider = DigioAdapter(
                base_url=settings.digio_base_url,
                client_id=settings.digio_client_id,
                client_secret=settings.digio_client_secret,
                webhook_secret=settings.digio_webhook_secret,
                timeout_seconds=timeout,
            )
        else:
            provider = EmudhraAdapter(
                base_url=settings.emudhra_base_url,
                api_key=settings.emudhra_api_key,
                api_secret=settings.emudhra_api_secret,
                webhook_secret=settings.emudhra_webhook_secret,
                timeout_seconds=timeout,
            )
        registry.register(name, provider)
    return registry


__all__ = [
    "CallbackStatus",
    "DigioAdapter",
    "DocuSignAdapter",
    "EmudhraAdapter",
    "HttpSignatureProvider",
    "NormalizedCallback",
    "ProviderRegistry",
    "ProviderSignResult",
    "SignRequest",
    "SignatureProvider",
    "SignatureProviderType",
    "build_provider_registry",
    "map_vendor_status",
]
