"""Client constructors for each :class:`ProviderId`."""

from __future__ import annotations

import logging
from types import MappingProxyType

import httpx

from .base import ProviderClient
from .capabilities import ProviderId
from .gemini import GeminiClient
from .imagen import ImagenClient
from .openai import OpenAIClient
from .stability import StabilityClient

logger = logging.getLogger(__name__)

PROVIDER_CLIENTS: MappingProxyType = MappingProxyType(
    {
        ProviderId.GEMINI: GeminiClient,
        ProviderId.OPENAI: OpenAIClient,
        ProviderId.STABILITY: StabilityClient,
        ProviderId.GOOGLE: ImagenClient,
    }
)


def create_client(
    provider_id: ProviderId,
    api_key: str,
    *,
    http_client: httpx.AsyncClient | None = None,
    timeout_s: float = 120.0,
) -> ProviderClient:
    """Instantiate the client class registered for a provider."""
    client_class = PROVIDER_CLIENTS[provider_id]
    logger.debug(f"Creating {client_class.__name__} for {provider_id.value}")
    return client_class(api_key, http_client=http_client, timeout_s=timeout_s)
