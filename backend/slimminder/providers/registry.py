from __future__ import annotations

from ..config import Settings
from .base import ProviderAdapter
from .mock import MockProvider
from .tink import TinkProvider


def get_provider(settings: Settings) -> ProviderAdapter:
    if settings.ob_provider == "tink":
        return TinkProvider(
            client_id=settings.ob_client_id,
            client_secret=settings.ob_client_secret,
            redirect_uri=settings.ob_redirect_uri,
            auth_base_url=settings.ob_auth_base_url,
            api_base_url=settings.ob_api_base_url,
            market=settings.ob_market,
            timeout=settings.ob_timeout_secs,
        )
    if settings.ob_provider == "mock":
        return MockProvider(client_id=settings.ob_client_id, redirect_uri=settings.ob_redirect_uri)
    raise ValueError(f"Unsupported open-banking provider: {settings.ob_provider}")
