"""Pydantic request models and the response envelope for the Sketchworks API.

Request bodies use the camelCase field names existing clients send
(``projectId``, ``imageData``); snake_case names are accepted as well.

Every response, success or failure, is wrapped in the same envelope::

    {"success": true, "data": {...}, "message": "..."}
    {"success": false, "error": "ERROR_CODE", "message": "..."}
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class GenerateRequest(BaseModel):
    """Request body for ``POST /api/generate``.

    Required fields are declared optional so that a missing value reaches the
    service and is reported as ``MISSING_REQUIRED_FIELDS`` rather than as a
    generic validation error.

    Attributes:
        project_id: Project the generated asset belongs to.
        image_data: Sketch as raw base64 or a ``data:image/...;base64,`` URL.
        prompt: Generation prompt; blank uses the default sketch prompt.
        seed: Optional seed passed to the provider.
        priority: Queue priority; higher runs first.
        provider: Provider id to try first; omitted lets the router choose.
    """

    model_config = ConfigDict(populate_by_name=True)

    project_id: str | None = Field(default=None, alias="projectId")
    image_data: str | None = Field(default=None, alias="imageData")
    prompt: str | None = Field(default=None, max_length=2000)
    seed: int | None = Field(default=None, ge=0)
    priority: int = Field(default=0, ge=0, le=10)
    provider: str | None = Field(default=None, max_length=64)


def success(data: Any = None, message: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


def failure(code: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"success": False, "error": code, "message": message, **extra}
