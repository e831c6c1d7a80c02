"""Stability AI REST v1 client (SDXL)."""

from __future__ import annotations

import logging
from typing import Any

from sketchworks.core.errors import ErrorKind
from sketchworks.core.models import GenerationRequest

from .base import ProviderClient
from .capabilities import ProviderId

logger = logging.getLogger(__name__)

STEPS_BY_QUALITY = {"fast": 20, "standard": 30, "premium": 50}
SDXL_DIMENSION = 1024

# Stability style presets are named like ours except where noted.
_STYLE_PRESETS = {
    "photographic": "photographic",
    "digital-art": "digital-art",
    "fantasy-art": "fantasy-art",
    "anime": "anime",
}


class StabilityClient(ProviderClient):
    provider_id = ProviderId.STABILITY
    base_url = "https://api.stability.ai/v1"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}

    def _common_params(self, request: GenerationRequest) -> dict[str, Any]:
        params: dict[str, Any] = {
            "cfg_scale": 7,
            "samples": 1,
            "steps": STEPS_BY_QUALITY.get(request.quality or "standard", 30),
        }
        if request.seed is not None:
            params["seed"] = request.seed
        if request.style in _STYLE_PRESETS:
            params["style_preset"] = _STYLE_PRESETS[request.style]
        return params

    async def text_to_image(self, request: GenerationRequest) -> tuple[bytes, dict[str, Any]]:
        width = height = SDXL_DIMENSION
        if request.dimensions is not None:
            width, height = request.dimensions.width, request.dimensions.height
        body = {
            "text_prompts": [{"text": request.prompt, "weight": 1}],
            "width": width,
            "height": height,
            **self._common_params(request),
        }
        payload = await self._post_json(f"/generation/{self.model}/text-to-image", json=body)
        return self._extract_artifact(payload)

    async def image_to_image(self, request: GenerationRequest) -> tuple[bytes, dict[str, Any]]:
        data = {
            "text_prompts[0][text]": request.prompt,
            "text_prompts[0][weight]": "1",
            "init_image_mode": "IMAGE_STRENGTH",
            "image_strength": "0.35",
            **{key: str(value) for key, value in self._common_params(request).items()},
        }
        files = {"init_image": ("sketch.png", self.source_image(request), "image/png")}
        payload = await self._post_json(
            f"/generation/{self.model}/image-to-image", data=data, files=files
        )
        return self._extract_artifact(payload)

    def _extract_artifact(self, payload: Any) -> tuple[bytes, dict[str, Any]]:
        try:
            artifact = payload["artifacts"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise self._error(ErrorKind.MALFORMED_RESPONSE, "Response contains no artifact") from e

        finish_reason = artifact.get("finishReason", "SUCCESS")
        if finish_reason == "CONTENT_FILTERED":
            raise self._error(ErrorKind.CONTENT_POLICY, "Output was filtered by the provider")
        if finish_reason == "ERROR" or not artifact.get("base64"):
            raise self._error(ErrorKind.MALFORMED_RESPONSE, "Artifact has no image data")

        metadata: dict[str, Any] = {"finish_reason": finish_reason}
        if artifact.get("seed") is not None:
            metadata["seed"] = artifact["seed"]
        return self._decode_image(artifact["base64"]), metadata
