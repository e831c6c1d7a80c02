"""Content moderation gate over SafeSearch-style likelihood scores.

The gate asks a detector for a likelihood per category and compares each one
to a threshold.  A category fails when ``detected >= threshold``:

========= ===========
Category  Threshold
========= ===========
adult     LIKELY
violence  LIKELY
racy      POSSIBLE
medical   LIKELY
spoof     LIKELY
========= ===========

The gate fails closed: if the detector errors, times out, or omits a category,
the audit does not pass and carries ``MODERATION_SERVICE_ERROR``.  The pipeline
driver turns such a result into a retryable ``SERVICE_UNAVAILABLE`` job error.

Detectors
---------
- :class:`VisionSafeSearchDetector` calls the Google Cloud Vision
  ``images:annotate`` REST endpoint with ``SAFE_SEARCH_DETECTION``.
- :class:`NoopDetector` reports every category as ``VERY_UNLIKELY``.  It is
  only ever built when ``MODERATION_BACKEND=noop`` is set explicitly.
"""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import IntEnum

import httpx

logger = logging.getLogger(__name__)


class Likelihood(IntEnum):
    UNKNOWN = 0
    VERY_UNLIKELY = 1
    UNLIKELY = 2
    POSSIBLE = 3
    LIKELY = 4
    VERY_LIKELY = 5


CATEGORIES = ("adult", "violence", "racy", "medical", "spoof")

DEFAULT_THRESHOLDS: Mapping[str, Likelihood] = {
    "adult": Likelihood.LIKELY,
    "violence": Likelihood.LIKELY,
    "racy": Likelihood.POSSIBLE,
    "medical": Likelihood.LIKELY,
    "spoof": Likelihood.LIKELY,
}

MODERATION_SERVICE_ERROR = "MODERATION_SERVICE_ERROR"


class DetectorError(Exception):
    """The moderation backend could not produce a verdict."""


@dataclass(frozen=True)
class Violation:
    category: str
    detected: Likelihood
    threshold: Likelihood

    def __str__(self) -> str:
        return f"{self.category}: {self.detected.name}"


@dataclass(frozen=True)
class AuditResult:
    passed: bool
    violations: tuple[Violation, ...] = ()
    error_code: str | None = None
    message: str | None = None
    scores: dict[str, Likelihood] = field(default_factory=dict)

    def describe(self) -> str:
        if self.violations:
            return ", ".join(str(v) for v in self.violations)
        return self.message or ""


class SafeSearchDetector(ABC):
    """Returns a likelihood per moderation category for an image."""

    @abstractmethod
    async def detect(self, image: bytes) -> Mapping[str, Likelihood]:
        """Raise :class:`DetectorError` when no verdict can be produced."""

    async def aclose(self) -> None:
        return None


class NoopDetector(SafeSearchDetector):
    async def detect(self, image: bytes) -> Mapping[str, Likelihood]:
        return {category: Likelihood.VERY_UNLIKELY for category in CATEGORIES}


class VisionSafeSearchDetector(SafeSearchDetector):
    """Google Cloud Vision SafeSearch over REST.

    Args:
        api_key: Vision API key.
        http_client: Shared client; a private one is created when omitted.
        timeout_s: Request timeout for the private client.
    """

    endpoint = "https://vision.googleapis.com/v1/images:annotate"

    def __init__(
        self,
        api_key: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        self.api_key = api_key
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_s)

    async def detect(self, image: bytes) -> Mapping[str, Likelihood]:
        body = {
            "requests": [
                {
                    "image": {"content": base64.b64encode(image).decode("ascii")},
                    "features": [{"type": "SAFE_SEARCH_DETECTION"}],
                }
            ]
        }
        try:
            response = await self._http.post(
                self.endpoint, params={"key": self.api_key}, json=body
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DetectorError(f"Vision request failed: {e}") from e

        try:
            result = payload["responses"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise DetectorError("Vision response has no results") from e
        if "error" in result:
            raise DetectorError(f"Vision error: {result['error'].get('message', result['error'])}")

        annotation = result.get("safeSearchAnnotation")
        if not annotation:
            raise DetectorError("Vision response has no safeSearchAnnotation")
        try:
            return {name: Likelihood[value] for name, value in annotation.items() if name in CATEGORIES}
        except KeyError as e:
            raise DetectorError(f"Unknown likelihood value {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


class ContentModerationGate:
    """Audit images against per-category thresholds.

    Args:
        detector: Likelihood backend.
        thresholds: Per-category thresholds; defaults to :data:`DEFAULT_THRESHOLDS`.
    """

    def __init__(
        self,
        detector: SafeSearchDetector,
        thresholds: Mapping[str, Likelihood] | None = None,
    ) -> None:
        self.detector = detector
        self.thresholds = dict(thresholds or DEFAULT_THRESHOLDS)

    @staticmethod
    def exceeds(detected: Likelihood, threshold: Likelihood) -> bool:
        return detected >= threshold

    async def audit(self, image: bytes) -> AuditResult:
        try:
            scores = dict(await self.detector.detect(image))
            missing = [category for category in self.thresholds if category not in scores]
            if missing:
                raise DetectorError(f"Detector omitted categories: {', '.join(missing)}")
        except Exception as e:
            logger.error(f"Content moderation failed: {e}")
            return AuditResult(passed=False, error_code=MODERATION_SERVICE_ERROR, message=str(e))

        violations = tuple(
            Violation(category, scores[category], threshold)
            for category, threshold in self.thresholds.items()
            if self.exceeds(scores[category], threshold)
        )
        if violations:
            logger.info(f"Moderation rejected image: {', '.join(str(v) for v in violations)}")
        return AuditResult(passed=not violations, violations=violations, scores=scores)

    async def aclose(self) -> None:
        await self.detector.aclose()
