"""Provider selection by capability filtering and weighted scoring.

Scoring
-------
Every candidate that supports the request and holds a credential is scored
out of 100:

============== ===============================================
Component      Points
============== ===============================================
capability     40 (every filtered candidate supports the op)
resolution     ``min(20, max_pixels / (2048*2048) * 20)``
throughput     ``min(20, requests_per_minute / 20 * 20)``
cost           ``max(0, 10 - cost_per_call * 100)``
style bonus    5 when the requested style is supported
quality bonus  5 when ``premium`` is requested and supported
============== ===============================================

The highest score wins.  Candidates are pre-ordered by the caller's
``priority`` (``quality`` by max pixels, ``speed`` by requests per minute,
``cost`` by cost per call) and then by declaration order in the capability
table; that ordering breaks score ties, so selection is deterministic.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from sketchworks.core.errors import ErrorKind, ProviderCallError, ProviderError
from sketchworks.core.models import GenerationRequest, Priority

from .capabilities import (
    PROVIDER_CAPABILITIES,
    REFERENCE_PIXELS,
    Operation,
    ProviderCapability,
    ProviderId,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recommendation:
    provider: ProviderId
    score: float
    estimated_cost: float
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "provider": self.provider.value,
            "score": round(self.score, 2),
            "estimatedCost": self.estimated_cost,
            "reasons": list(self.reasons),
        }


class ProviderSelector:
    """Choose a provider for a request from the capability table.

    Args:
        capabilities: Table to select from; defaults to the static table.
    """

    def __init__(self, capabilities: Mapping[ProviderId, ProviderCapability] | None = None):
        self.capabilities = capabilities if capabilities is not None else PROVIDER_CAPABILITIES

    def is_suitable(self, provider_id: ProviderId, request: GenerationRequest) -> bool:
        capability = self.capabilities.get(provider_id)
        if capability is None:
            return False
        return (
            capability.supports(request.operation)
            and capability.fits(request.dimensions)
            and capability.supports_quality(request.quality)
            and capability.supports_style(request.style)
        )

    def candidates(
        self, request: GenerationRequest, available: Iterable[ProviderId]
    ) -> list[ProviderId]:
        """Suitable providers holding a credential, in declaration order."""
        usable = set(available)
        return [
            provider_id
            for provider_id in self.capabilities
            if provider_id in usable and self.is_suitable(provider_id, request)
        ]

    def score(self, provider_id: ProviderId, request: GenerationRequest) -> float:
        capability = self.capabilities[provider_id]
        score = 40.0 if capability.supports(request.operation) else 0.0
        score += min(20.0, capability.max_size.pixels / REFERENCE_PIXELS * 20)
        score += min(20.0, capability.requests_per_minute / 20 * 20)
        score += max(0.0, 10 - self._cost(capability, request) * 100)
        if request.style and request.style in capability.styles:
            score += 5
        if request.quality == "premium" and "premium" in capability.qualities:
            score += 5
        return score

    def select(
        self,
        request: GenerationRequest,
        available: Iterable[ProviderId],
        priority: Priority = "quality",
        preferred: str | ProviderId | None = None,
    ) -> ProviderId:
        """Return the best provider for ``request``.

        Raises:
            ProviderCallError: ``NO_PROVIDER_AVAILABLE`` when nothing qualifies.
        """
        candidates = self.candidates(request, available)
        if not candidates:
            raise ProviderCallError(
                ProviderError(
                    kind=ErrorKind.NO_PROVIDER,
                    message=f"No configured provider supports {request.operation} for this request",
                    provider="none",
                )
            )

        if preferred is not None:
            try:
                preferred_id = ProviderId(preferred)
            except ValueError:
                preferred_id = None
            if preferred_id in candidates:
                logger.debug(f"Using caller-specified provider {preferred_id.value}")
                return preferred_id

        if len(candidates) == 1:
            return candidates[0]

        ordered = self._order_by_priority(candidates, request, priority)
        scores = {provider_id: self.score(provider_id, request) for provider_id in ordered}
        # max() keeps the first of equal scores, i.e. the priority order.
        chosen = max(ordered, key=lambda provider_id: scores[provider_id])
        summary = ", ".join(f"{p.value}={s:.2f}" for p, s in scores.items())
        logger.debug(f"Selected {chosen.value} for {request.operation} ({summary})")
        return chosen

    def recommendations(
        self, request: GenerationRequest, available: Iterable[ProviderId]
    ) -> list[Recommendation]:
        """Score every suitable provider, best first."""
        result = []
        for provider_id in self.candidates(request, available):
            capability = self.capabilities[provider_id]
            result.append(
                Recommendation(
                    provider=provider_id,
                    score=self.score(provider_id, request),
                    estimated_cost=capability.estimated_cost(request.operation),
                    reasons=self._reasons(capability, request),
                )
            )
        return sorted(result, key=lambda rec: rec.score, reverse=True)

    def _order_by_priority(
        self, candidates: list[ProviderId], request: GenerationRequest, priority: Priority
    ) -> list[ProviderId]:
        if priority == "speed":
            key = lambda p: -self.capabilities[p].requests_per_minute  # noqa: E731
        elif priority == "cost":
            key = lambda p: self._cost(self.capabilities[p], request)  # noqa: E731
        else:
            key = lambda p: -self.capabilities[p].max_size.pixels  # noqa: E731
        # sorted() is stable, so declaration order survives within equal keys.
        return sorted(candidates, key=key)

    @staticmethod
    def _cost(capability: ProviderCapability, request: GenerationRequest) -> float:
        cost = capability.estimated_cost(request.operation)
        if not cost:
            cost = capability.estimated_cost(Operation.TEXT_TO_IMAGE)
        return cost or 1.0

    @staticmethod
    def _reasons(capability: ProviderCapability, request: GenerationRequest) -> list[str]:
        reasons = []
        if capability.max_size.width >= 2048:
            reasons.append("Supports high-resolution output")
        if capability.requests_per_minute >= 10:
            reasons.append("High throughput")
        if capability.estimated_cost(request.operation) < 0.02:
            reasons.append("Low cost")
        if request.style and request.style in capability.styles:
            reasons.append(f"Supports the {request.style} style")
        return reasons
