"""Google Imagen client using the Generative Language ``:predict`` endpoint."""

from __future__ import annotations

from typing import Any

from sketchworks.core.errors import ErrorKind
from sketchworks.core.models import GenerationRequest

from .base import ProviderClient
from .capabilities import ProviderId

ASPECT_RATIOS = {"1:1": 1.0, "3:4": 0.75, "4:3": 4 / 3, "9:16": 9 / 16, "16:9": 16 / 9}


def aspect_ratio_for(request: GenerationRequest) -> str:
    if request.dimensions is None:
        return "1:1"
    ratio = request.dimensions.width / request.dimensions.height
    return min(ASPECT_RATIOS, key=lambda name: abs(ASPECT_RATIOS[name] - ratio))


class ImagenClient(ProviderClient):
    provider_id = ProviderId.GOOGLE
    base_url = "https://generativelanguage.googleapis.com/v1beta"

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key}

    async def text_to_image(self, request: GenerationRequest) -> tuple[bytes, dict[str, Any]]:
        body = {
            "instances": [{"prompt": self.styled_prompt(request)}],
            "parameters": {"sampleCount": 1, "aspectRatio": aspect_ratio_for(request)},
        }
        payload = await self._post_json(f"/models/{self.model}:predict", json=body)

        predictions = payload.get("predictions") if isinstance(payload, dict) else None
        if not predictions:
            # Imagen answers 200 with no predictions when its safety filter
            # removed every sample.
            raise self._error(ErrorKind.CONTENT_POLICY, "No image returned; prompt was filtered")
        prediction = predictions[0]
        encoded = prediction.get("bytesBase64Encoded")
        if not encoded:
            raise self._error(ErrorKind.MALFORMED_RESPONSE, "Prediction has no image data")
        return self._decode_image(encoded), {"mime_type": prediction.get("mimeType")}
