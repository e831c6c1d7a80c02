"""AI provider capability table, selection and HTTP clients."""

from sketchworks.providers.capabilities import (
    PROVIDER_CAPABILITIES,
    Operation,
    ProviderCapability,
    ProviderId,
)

__all__ = ["PROVIDER_CAPABILITIES", "Operation", "ProviderCapability", "ProviderId"]
