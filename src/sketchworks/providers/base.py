"""Base class for AI provider clients.

A provider client turns a :class:`~sketchworks.core.models.GenerationRequest`
into one HTTP call against its provider and returns a normalised
:class:`~sketchworks.core.models.GenerationResult`.  Clients never retry; that
is the request router's job.

Error Normalisation
-------------------
Every failure leaving a client is a :class:`ProviderCallError` whose
:class:`ProviderError` carries an :class:`ErrorKind` assigned here, at the
HTTP boundary:

- ``httpx.TimeoutException`` -> ``TIMEOUT``
- any other ``httpx.TransportError`` -> ``NETWORK``
- HTTP error status -> :func:`kind_for_status`, refined by body keywords for
  content-policy and quota responses
- undecodable or image-less response bodies -> ``MALFORMED_RESPONSE``

Adding a Provider
-----------------
Subclass :class:`ProviderClient`, set ``provider_id`` and ``base_url``,
implement :meth:`ProviderClient.text_to_image` (and
:meth:`ProviderClient.image_to_image` when the capability table says the
provider supports it), then register the class in
:mod:`sketchworks.providers.registry`.

See Also
--------
- sketchworks.providers.capabilities: What each provider supports
- sketchworks.core.router: Retry and fallback across providers
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from sketchworks.core.errors import ErrorKind, ProviderCallError, ProviderError, kind_for_status
from sketchworks.core.images import content_type_for
from sketchworks.core.models import GenerationRequest, GenerationResult

from .capabilities import PROVIDER_CAPABILITIES, Operation, ProviderCapability, ProviderId

logger = logging.getLogger(__name__)

STYLE_PROMPTS: dict[str, str] = {
    "photographic": "photorealistic, high quality photography, professional lighting, detailed",
    "digital-art": "digital artwork, concept art, illustration, artistic",
    "anime": "anime art style, manga style, Japanese animation, colorful",
    "realistic": "realistic rendering, detailed, lifelike, high resolution",
    "abstract": "abstract art, artistic interpretation, creative, modern",
    "cinematic": "cinematic lighting, movie scene, dramatic, professional",
    "fantasy-art": "fantasy artwork, magical, mystical, ethereal",
}

_CONTENT_POLICY_MARKERS = ("content_policy", "content policy", "safety", "moderation_blocked")
_QUOTA_MARKERS = ("insufficient_quota", "quota", "billing")


def classify_response_error(status_code: int, body: str) -> ErrorKind:
    """Assign an error kind to a failed HTTP response."""
    lowered = body.lower()
    if 400 <= status_code < 500 and status_code != 429:
        if any(marker in lowered for marker in _CONTENT_POLICY_MARKERS):
            return ErrorKind.CONTENT_POLICY
        if any(marker in lowered for marker in _QUOTA_MARKERS):
            return ErrorKind.QUOTA
    return kind_for_status(status_code)


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(payload, dict):
        error = payload.get("error", payload)
        if isinstance(error, dict):
            return str(error.get("message") or error.get("name") or error)
        if isinstance(error, str):
            return error
        return str(payload.get("message", payload))
    return str(payload)


class ProviderClient(ABC):
    """Abstract client for one AI provider.

    Args:
        api_key: Provider credential.
        http_client: Shared ``httpx.AsyncClient``; a private one is created
            (and closed by :meth:`aclose`) when omitted.
        timeout_s: Per-request timeout for the private client.
        base_url: Override of the provider's API root.

    Class Attributes:
        provider_id: Identifier matching the capability table.
        base_url: Default API root.
    """

    provider_id: ProviderId
    base_url: str = ""

    def __init__(
        self,
        api_key: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = 120.0,
        base_url: str | None = None,
    ) -> None:
        self.api_key = api_key
        if base_url is not None:
            self.base_url = base_url
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_s)

    @property
    def capability(self) -> ProviderCapability:
        return PROVIDER_CAPABILITIES[self.provider_id]

    @property
    def model(self) -> str:
        return self.capability.default_model

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Run one provider call for the request's operation.

        Raises:
            ProviderCallError: On any failure, with a normalised error.
        """
        if not self.capability.supports(request.operation):
            raise self._error(
                ErrorKind.UNSUPPORTED,
                f"{self.provider_id.value} does not support {request.operation}",
            )
        started = time.monotonic()
        if request.operation == Operation.IMAGE_TO_IMAGE:
            self.source_image(request)
            image, extra = await self.image_to_image(request)
        else:
            image, extra = await self.text_to_image(request)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"{self.provider_id.value} generated an image in {elapsed_ms}ms")
        return GenerationResult(
            image=image,
            content_type=content_type_for(image),
            provider=self.provider_id.value,
            model_version=extra.pop("model", self.model),
            seed=extra.pop("seed", request.seed),
            processing_time_ms=elapsed_ms,
            metadata=extra,
        )

    @abstractmethod
    async def text_to_image(self, request: GenerationRequest) -> tuple[bytes, dict[str, Any]]:
        """Generate an image from text.

        Returns:
            Tuple of (image bytes, metadata). Metadata may carry ``model`` and
            ``seed`` overrides for the result.
        """

    async def image_to_image(self, request: GenerationRequest) -> tuple[bytes, dict[str, Any]]:
        raise self._error(
            ErrorKind.UNSUPPORTED,
            f"{self.provider_id.value} does not support image-to-image",
        )

    def source_image(self, request: GenerationRequest) -> bytes:
        """Return the request's source image, or raise ``INVALID_REQUEST``."""
        if not request.source_image:
            raise self._error(ErrorKind.INVALID_REQUEST, "Source image is required")
        return request.source_image

    def styled_prompt(self, request: GenerationRequest) -> str:
        suffix = STYLE_PROMPTS.get(request.style or "")
        return f"{request.prompt}, {suffix}" if suffix else request.prompt

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _post_json(self, path: str, **kwargs: Any) -> Any:
        """POST to ``base_url + path`` and return the decoded JSON body."""
        url = f"{self.base_url}{path}"
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        try:
            response = await self._http.post(url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise self._error(ErrorKind.TIMEOUT, f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise self._error(ErrorKind.NETWORK, f"Network error: {e}") from e

        if response.is_error:
            message = _error_message(response)
            kind = classify_response_error(response.status_code, response.text)
            logger.warning(
                f"{self.provider_id.value} returned HTTP {response.status_code}: {message}"
            )
            raise self._error(kind, message, response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise self._error(ErrorKind.MALFORMED_RESPONSE, "Response body is not JSON") from e

    async def _download(self, url: str) -> bytes:
        try:
            response = await self._http.get(url)
        except httpx.TimeoutException as e:
            raise self._error(ErrorKind.TIMEOUT, f"Image download timed out: {e}") from e
        except httpx.TransportError as e:
            raise self._error(ErrorKind.NETWORK, f"Image download failed: {e}") from e
        if response.is_error:
            raise self._error(
                kind_for_status(response.status_code),
                f"Image download returned HTTP {response.status_code}",
                response.status_code,
            )
        return response.content

    def _decode_image(self, encoded: str) -> bytes:
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise self._error(ErrorKind.MALFORMED_RESPONSE, "Image payload is not base64") from e

    def _error(
        self, kind: ErrorKind, message: str, status_code: int | None = None
    ) -> ProviderCallError:
        return ProviderCallError(
            ProviderError(
                kind=kind,
                message=message,
                provider=self.provider_id.value,
                status_code=status_code,
            )
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
