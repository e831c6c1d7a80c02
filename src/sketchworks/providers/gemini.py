"""Gemini 2.5 Flash Image through the tu-zi OpenAI-compatible gateway."""

from __future__ import annotations

from sketchworks.core.models import Dimensions

from .capabilities import ProviderId
from .openai import OpenAICompatibleClient


class GeminiClient(OpenAICompatibleClient):
    """Sketch-to-image and text-to-image via ``api.tu-zi.com``.

    The gateway speaks the OpenAI images format, so image-to-image requests go
    to ``/images/edits`` with the sketch as a multipart upload.
    """

    provider_id = ProviderId.GEMINI
    base_url = "https://api.tu-zi.com/v1"
    sizes = (
        Dimensions(1024, 1024),
        Dimensions(1792, 1024),
        Dimensions(1024, 1792),
        Dimensions(2048, 1024),
        Dimensions(512, 512),
    )
