"""Tests for sketchworks.core.moderation — the content moderation gate.

Tests cover:
- Per-category thresholds (``detected >= threshold`` fails).
- Fail-closed behaviour on detector errors and missing categories.
- The Cloud Vision SafeSearch detector against a mocked endpoint.
"""

from __future__ import annotations

import json

import httpx
import pytest

from sketchworks.core.moderation import (
    MODERATION_SERVICE_ERROR,
    ContentModerationGate,
    DetectorError,
    Likelihood,
    NoopDetector,
    VisionSafeSearchDetector,
)

pytestmark = pytest.mark.anyio


class TestThresholds:
    def test_exceeds_is_inclusive(self):
        assert ContentModerationGate.exceeds(Likelihood.LIKELY, Likelihood.LIKELY)
        assert not ContentModerationGate.exceeds(Likelihood.POSSIBLE, Likelihood.LIKELY)

    async def test_clean_image_passes(self, detector_factory):
        gate = ContentModerationGate(detector_factory())
        result = await gate.audit(b"image")
        assert result.passed is True
        assert result.violations == ()
        assert result.error_code is None

    async def test_adult_likely_fails(self, detector_factory):
        gate = ContentModerationGate(detector_factory([{"adult": Likelihood.LIKELY}]))
        result = await gate.audit(b"image")
        assert result.passed is False
        assert [v.category for v in result.violations] == ["adult"]
        assert result.describe() == "adult: LIKELY"

    async def test_adult_possible_passes(self, detector_factory):
        gate = ContentModerationGate(detector_factory([{"adult": Likelihood.POSSIBLE}]))
        assert (await gate.audit(b"image")).passed is True

    async def test_racy_possible_fails(self, detector_factory):
        """Racy content has the stricter POSSIBLE threshold."""
        gate = ContentModerationGate(detector_factory([{"racy": Likelihood.POSSIBLE}]))
        result = await gate.audit(b"image")
        assert result.passed is False
        assert result.violations[0].threshold is Likelihood.POSSIBLE

    async def test_unknown_likelihood_passes(self, detector_factory):
        gate = ContentModerationGate(detector_factory([{"violence": Likelihood.UNKNOWN}]))
        assert (await gate.audit(b"image")).passed is True

    async def test_multiple_violations(self, detector_factory):
        gate = ContentModerationGate(
            detector_factory(
                [{"violence": Likelihood.VERY_LIKELY, "spoof": Likelihood.LIKELY}]
            )
        )
        result = await gate.audit(b"image")
        assert {v.category for v in result.violations} == {"violence", "spoof"}

    async def test_custom_thresholds(self, detector_factory):
        gate = ContentModerationGate(
            detector_factory([{"medical": Likelihood.UNLIKELY}]),
            thresholds={"medical": Likelihood.UNLIKELY},
        )
        assert (await gate.audit(b"image")).passed is False


class TestFailClosed:
    async def test_detector_error(self, detector_factory):
        gate = ContentModerationGate(detector_factory([DetectorError("vision down")]))
        result = await gate.audit(b"image")
        assert result.passed is False
        assert result.error_code == MODERATION_SERVICE_ERROR
        assert "vision down" in result.message

    async def test_unexpected_exception(self, detector_factory):
        gate = ContentModerationGate(detector_factory([TimeoutError("slow")]))
        result = await gate.audit(b"image")
        assert result.passed is False
        assert result.error_code == MODERATION_SERVICE_ERROR

    async def test_missing_category(self):
        class PartialDetector(NoopDetector):
            async def detect(self, image):
                scores = dict(await super().detect(image))
                del scores["racy"]
                return scores

        result = await ContentModerationGate(PartialDetector()).audit(b"image")
        assert result.passed is False
        assert result.error_code == MODERATION_SERVICE_ERROR
        assert "racy" in result.message


class TestVisionSafeSearchDetector:
    def _detector(self, handler) -> VisionSafeSearchDetector:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return VisionSafeSearchDetector("vision-key", http_client=http)

    async def test_parses_annotation(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "responses": [
                        {
                            "safeSearchAnnotation": {
                                "adult": "VERY_UNLIKELY",
                                "spoof": "UNLIKELY",
                                "medical": "POSSIBLE",
                                "violence": "LIKELY",
                                "racy": "UNKNOWN",
                            }
                        }
                    ]
                },
            )

        scores = await self._detector(handler).detect(b"\x89PNG")

        assert seen["url"].params["key"] == "vision-key"
        assert seen["url"].path == "/v1/images:annotate"
        request = seen["body"]["requests"][0]
        assert request["features"] == [{"type": "SAFE_SEARCH_DETECTION"}]
        assert request["image"]["content"] == "iVBORw=="
        assert scores["violence"] is Likelihood.LIKELY
        assert scores["racy"] is Likelihood.UNKNOWN

    async def test_http_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"error": {"message": "API key invalid"}})

        with pytest.raises(DetectorError):
            await self._detector(handler).detect(b"image")

    async def test_per_image_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"responses": [{"error": {"message": "Bad image data"}}]}
            )

        with pytest.raises(DetectorError, match="Bad image data"):
            await self._detector(handler).detect(b"image")

    async def test_gate_over_failing_vision(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        result = await ContentModerationGate(self._detector(handler)).audit(b"image")
        assert result.passed is False
        assert result.error_code == MODERATION_SERVICE_ERROR
