"""Static capability table for the supported AI providers.

Each provider is identified by a member of the closed :class:`ProviderId`
enum and described by an immutable :class:`ProviderCapability`.  The table is
built once at import time; adding a provider means extending the enum, this
table, and the client table in :mod:`sketchworks.providers.registry`.

Declaration order matters: the selector breaks score ties by the order in
which providers appear in :data:`PROVIDER_CAPABILITIES`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

from sketchworks.core.models import Dimensions


class ProviderId(str, Enum):
    GEMINI = "gemini-tuzi"
    OPENAI = "openai"
    STABILITY = "stability"
    GOOGLE = "google"


class Operation(str, Enum):
    TEXT_TO_IMAGE = "text-to-image"
    IMAGE_TO_IMAGE = "image-to-image"
    TEXT_TO_VIDEO = "text-to-video"
    IMAGE_TO_VIDEO = "image-to-video"


# Reference resolution used by the selector's resolution-headroom score.
REFERENCE_PIXELS = 2048 * 2048


@dataclass(frozen=True)
class ProviderCapability:
    """Immutable description of what one provider can do.

    Attributes:
        provider_id: Closed identifier of the provider.
        name: Display name.
        operations: Supported operation types.
        max_size: Largest output the provider accepts.
        qualities: Supported quality tiers.
        styles: Supported style presets.
        requests_per_minute: Upstream rate limit.
        requests_per_day: Upstream daily cap.
        cost_per_call: Estimated USD cost per operation.
        default_model: Model id used when none is requested.
    """

    provider_id: ProviderId
    name: str
    operations: frozenset[Operation]
    max_size: Dimensions
    qualities: frozenset[str]
    styles: frozenset[str]
    requests_per_minute: int
    requests_per_day: int
    cost_per_call: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))
    default_model: str = ""

    def supports(self, operation: str | Operation) -> bool:
        try:
            return Operation(operation) in self.operations
        except ValueError:
            return False

    def fits(self, dimensions: Dimensions | None) -> bool:
        if dimensions is None:
            return True
        return (
            dimensions.width <= self.max_size.width and dimensions.height <= self.max_size.height
        )

    def supports_quality(self, quality: str | None) -> bool:
        return quality is None or quality in self.qualities

    def supports_style(self, style: str | None) -> bool:
        return style is None or style in self.styles

    def estimated_cost(self, operation: str | Operation) -> float:
        try:
            return self.cost_per_call.get(Operation(operation), 0.0)
        except ValueError:
            return 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.provider_id.value,
            "name": self.name,
            "operations": sorted(op.value for op in self.operations),
            "maxSize": {"width": self.max_size.width, "height": self.max_size.height},
            "qualities": sorted(self.qualities),
            "styles": sorted(self.styles),
            "rateLimit": {
                "requestsPerMinute": self.requests_per_minute,
                "requestsPerDay": self.requests_per_day,
            },
            "estimatedCost": {op.value: cost for op, cost in self.cost_per_call.items()},
            "defaultModel": self.default_model,
        }


def _costs(**costs: float) -> MappingProxyType:
    return MappingProxyType({Operation(key.replace("_", "-")): value for key, value in costs.items()})


_TABLE = (
    ProviderCapability(
        provider_id=ProviderId.GEMINI,
        name="Gemini 2.5 Flash Image (tu-zi)",
        operations=frozenset({Operation.TEXT_TO_IMAGE, Operation.IMAGE_TO_IMAGE}),
        max_size=Dimensions(2048, 2048),
        qualities=frozenset({"fast", "standard", "premium"}),
        styles=frozenset({"photographic", "digital-art", "anime", "realistic", "abstract"}),
        requests_per_minute=15,
        requests_per_day=3000,
        cost_per_call=_costs(text_to_image=0.005, image_to_image=0.008),
        default_model="gemini-2.5-flash-image",
    ),
    ProviderCapability(
        provider_id=ProviderId.OPENAI,
        name="OpenAI DALL-E",
        operations=frozenset({Operation.TEXT_TO_IMAGE}),
        max_size=Dimensions(1024, 1024),
        qualities=frozenset({"standard", "premium"}),
        styles=frozenset({"photographic", "digital-art", "cinematic"}),
        requests_per_minute=5,
        requests_per_day=1000,
        cost_per_call=_costs(text_to_image=0.02),
        default_model="dall-e-3",
    ),
    ProviderCapability(
        provider_id=ProviderId.STABILITY,
        name="Stability AI",
        operations=frozenset({Operation.TEXT_TO_IMAGE, Operation.IMAGE_TO_IMAGE}),
        max_size=Dimensions(2048, 2048),
        qualities=frozenset({"fast", "standard", "premium"}),
        styles=frozenset({"photographic", "digital-art", "fantasy-art", "anime"}),
        requests_per_minute=10,
        requests_per_day=2000,
        cost_per_call=_costs(text_to_image=0.01, image_to_image=0.015),
        default_model="stable-diffusion-xl-1024-v1-0",
    ),
    ProviderCapability(
        provider_id=ProviderId.GOOGLE,
        name="Google Imagen",
        operations=frozenset({Operation.TEXT_TO_IMAGE}),
        max_size=Dimensions(1536, 1536),
        qualities=frozenset({"fast", "standard", "premium"}),
        styles=frozenset({"photographic", "digital-art", "cinematic", "abstract"}),
        requests_per_minute=20,
        requests_per_day=5000,
        cost_per_call=_costs(text_to_image=0.008),
        default_model="imagen-3.0-generate-002",
    ),
)

PROVIDER_CAPABILITIES: MappingProxyType = MappingProxyType(
    {capability.provider_id: capability for capability in _TABLE}
)


def get_capability(provider_id: str | ProviderId) -> ProviderCapability | None:
    """Return the capability entry for a provider id, or None if unknown."""
    try:
        return PROVIDER_CAPABILITIES[ProviderId(provider_id)]
    except ValueError:
        return None


def declaration_index(provider_id: ProviderId) -> int:
    return list(PROVIDER_CAPABILITIES).index(provider_id)


def providers_for_operation(operation: str | Operation) -> list[ProviderId]:
    """Providers supporting an operation, in declaration order."""
    return [pid for pid, cap in PROVIDER_CAPABILITIES.items() if cap.supports(operation)]
