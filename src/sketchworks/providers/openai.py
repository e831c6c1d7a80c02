"""OpenAI Images API client (DALL-E 3).

Also provides :class:`OpenAICompatibleClient`, the shared implementation of the
``/images/generations`` and ``/images/edits`` wire format that third-party
gateways such as tu-zi expose.
"""

from __future__ import annotations

import logging
from typing import Any

from sketchworks.core.errors import ErrorKind
from sketchworks.core.images import content_type_for, extension_for
from sketchworks.core.models import Dimensions, GenerationRequest

from .base import ProviderClient
from .capabilities import ProviderId

logger = logging.getLogger(__name__)

_DALLE3_SIZES = (Dimensions(1024, 1024), Dimensions(1792, 1024), Dimensions(1024, 1792))


def nearest_size(dimensions: Dimensions | None, sizes: tuple[Dimensions, ...]) -> str:
    """Pick the supported size closest in aspect ratio to the request."""
    if dimensions is None:
        chosen = sizes[0]
    else:
        ratio = dimensions.width / dimensions.height
        chosen = min(sizes, key=lambda size: abs(size.width / size.height - ratio))
    return f"{chosen.width}x{chosen.height}"


class OpenAICompatibleClient(ProviderClient):
    """Client for the OpenAI ``images`` endpoints and compatible gateways."""

    sizes: tuple[Dimensions, ...] = _DALLE3_SIZES

    def generation_body(self, request: GenerationRequest) -> dict[str, Any]:
        return {
            "model": self.model,
            "prompt": self.styled_prompt(request),
            "n": 1,
            "size": nearest_size(request.dimensions, self.sizes),
            "response_format": "b64_json",
        }

    async def text_to_image(self, request: GenerationRequest) -> tuple[bytes, dict[str, Any]]:
        payload = await self._post_json("/images/generations", json=self.generation_body(request))
        return await self._extract_image(payload)

    async def image_to_image(self, request: GenerationRequest) -> tuple[bytes, dict[str, Any]]:
        source = self.source_image(request)
        content_type = content_type_for(source)
        files = {
            "image": (
                f"sketch.{extension_for(content_type)}",
                source,
                content_type,
            )
        }
        data = {
            "model": self.model,
            "prompt": self.styled_prompt(request),
            "n": "1",
            "size": nearest_size(request.dimensions, self.sizes),
            "response_format": "b64_json",
        }
        payload = await self._post_json("/images/edits", data=data, files=files)
        return await self._extract_image(payload)

    async def _extract_image(self, payload: Any) -> tuple[bytes, dict[str, Any]]:
        try:
            item = payload["data"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise self._error(ErrorKind.MALFORMED_RESPONSE, "Response contains no image") from e

        metadata: dict[str, Any] = {}
        if item.get("revised_prompt"):
            metadata["revised_prompt"] = item["revised_prompt"]

        if item.get("b64_json"):
            return self._decode_image(item["b64_json"]), metadata
        if item.get("url"):
            return await self._download(item["url"]), metadata
        raise self._error(ErrorKind.MALFORMED_RESPONSE, "Response image has neither data nor URL")


class OpenAIClient(OpenAICompatibleClient):
    provider_id = ProviderId.OPENAI
    base_url = "https://api.openai.com/v1"

    def generation_body(self, request: GenerationRequest) -> dict[str, Any]:
        body = super().generation_body(request)
        body["quality"] = "hd" if request.quality == "premium" else "standard"
        if request.style in ("photographic", "cinematic"):
            body["style"] = "natural"
        else:
            body["style"] = "vivid"
        return body
