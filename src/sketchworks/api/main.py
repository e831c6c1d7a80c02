"""Sketchworks — FastAPI application.

This module defines the application factory, the REST routes that front the
generation pipeline, and the ``main()`` CLI function that launches uvicorn.

Architecture
------------
- **Composition root**: the lifespan builds a
  :class:`~sketchworks.core.runtime.Runtime` from configuration, opens the
  database and starts the worker pool; shutdown stops them in reverse order.
- **Handlers are thin**: they validate request shape and forward to
  :class:`~sketchworks.core.service.GenerationService`.  Generation itself
  runs in the worker pool; clients poll the status endpoint.
- **Errors**: every :class:`~sketchworks.core.errors.SketchworksError` is
  rendered as the ``{success, error, message}`` envelope with its HTTP status;
  503 responses carry a ``Retry-After`` header.
- **Artifacts**: with the local storage backend, generated images are served
  by ``StaticFiles`` under ``STORAGE_PUBLIC_BASE_URL`` (``/static``).

Endpoints
---------
========  ===============================  ===================================
Method    Path                             Purpose
========  ===============================  ===================================
GET       ``/api/health``                  Liveness, version, worker state
POST      ``/api/generate``                Submit a sketch for generation
GET       ``/api/assets/{id}/status``      Poll an asset
DELETE    ``/api/assets/{id}``             Remove an asset and its artifact
GET       ``/api/projects/{id}/assets``    List a project's assets
DELETE    ``/api/jobs/{id}``               Cancel a job
GET       ``/api/queue``                   Queue counts and active requests
GET       ``/api/budget``                  Current monthly budget
GET       ``/api/providers``               Capability table and availability
========  ===============================  ===================================

Usage
-----
CLI (installed entry point)::

    sketchworks

Direct invocation::

    python -m sketchworks.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from sketchworks import __version__
from sketchworks.api.models import GenerateRequest, failure, success
from sketchworks.core.config import SketchworksConfig, config
from sketchworks.core.errors import AdmissionError, SketchworksError
from sketchworks.core.runtime import Runtime, build_runtime
from sketchworks.providers.capabilities import PROVIDER_CAPABILITIES

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_S = 60

RuntimeFactory = Callable[[SketchworksConfig], Runtime]


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def create_app(
    cfg: SketchworksConfig = config,
    runtime_factory: RuntimeFactory = build_runtime,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        cfg: Configuration to build the runtime from.
        runtime_factory: Builds the component graph; tests pass a factory
            that injects fakes.

    Returns:
        The configured application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # --- Startup -------------------------------------------------------
        runtime = runtime_factory(cfg)
        await runtime.start(start_workers=cfg.worker_enabled)
        app.state.runtime = runtime
        logger.info(
            f"Sketchworks started (workers={'on' if cfg.worker_enabled else 'off'}, "
            f"storage={cfg.storage_backend}, moderation={cfg.moderation_backend})"
        )

        yield

        # --- Shutdown ------------------------------------------------------
        await runtime.stop()
        logger.info("Sketchworks stopped")

    app = FastAPI(
        title="Sketchworks",
        description="Sketch-to-artwork generation pipeline.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Serve locally stored artifacts at the same prefix used to build their URLs.
    base_url = cfg.storage_public_base_url
    if cfg.storage_backend == "local" and base_url.startswith("/"):
        app.mount(base_url, StaticFiles(directory=str(cfg.storage_dir)), name="artifacts")

    # -----------------------------------------------------------------------
    # Error rendering.
    # -----------------------------------------------------------------------

    @app.exception_handler(SketchworksError)
    async def handle_pipeline_error(request: Request, exc: SketchworksError) -> JSONResponse:
        headers = {}
        extra = {}
        if isinstance(exc, AdmissionError):
            if exc.retry_after_seconds is not None:
                extra["retryAfter"] = exc.retry_after_seconds
            extra.update(exc.details)
        if exc.http_status == 503:
            retry_after = getattr(exc, "retry_after_seconds", None) or DEFAULT_RETRY_AFTER_S
            headers["Retry-After"] = str(retry_after)
        if exc.http_status >= 500:
            logger.warning(f"{request.method} {request.url.path} -> {exc}")
        return JSONResponse(
            status_code=exc.http_status,
            content=failure(exc.code, exc.message, **extra),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content=failure(
                "INVALID_REQUEST",
                "Request body is invalid",
                details=jsonable_encoder(exc.errors()),
            ),
        )

    # -----------------------------------------------------------------------
    # Routes.
    # -----------------------------------------------------------------------

    @app.get("/api/health")
    async def health(runtime: Runtime = Depends(get_runtime)) -> dict:
        return success(
            {
                "status": "ok",
                "version": __version__,
                "database": runtime.db.is_open,
                "workers": runtime.pool.running,
            }
        )

    @app.post("/api/generate")
    async def generate(
        req: GenerateRequest, runtime: Runtime = Depends(get_runtime)
    ) -> dict:
        """Validate a sketch submission and queue it for generation.

        Returns:
            Envelope with ``assetId``, ``jobId`` and ``estimatedTimeMs``.
        """
        receipt = await runtime.service.submit(
            req.project_id,
            req.image_data,
            req.prompt,
            seed=req.seed,
            priority=req.priority,
            provider=req.provider,
        )
        return success(receipt.to_dict(), "Generation queued")

    @app.get("/api/assets/{asset_id}/status")
    async def asset_status(asset_id: str, runtime: Runtime = Depends(get_runtime)) -> dict:
        return success(runtime.service.get_status(asset_id).to_dict())

    @app.delete("/api/assets/{asset_id}")
    async def delete_asset(asset_id: str, runtime: Runtime = Depends(get_runtime)) -> dict:
        removed = await runtime.service.delete_asset(asset_id)
        return success({"id": removed.id, "deleted": True}, "Asset deleted")

    @app.get("/api/projects/{project_id}/assets")
    async def project_assets(
        project_id: str,
        limit: int = Query(default=50, ge=1, le=200),
        offset: int = Query(default=0, ge=0),
        runtime: Runtime = Depends(get_runtime),
    ) -> dict:
        assets = runtime.service.list_assets(project_id, limit=limit, offset=offset)
        return success({"assets": [asset.to_dict() for asset in assets], "count": len(assets)})

    @app.delete("/api/jobs/{job_id}")
    async def cancel_job(job_id: str, runtime: Runtime = Depends(get_runtime)) -> dict:
        outcome = await runtime.service.cancel(job_id)
        return success({"jobId": job_id, "outcome": outcome.value})

    @app.get("/api/queue")
    async def queue_status(runtime: Runtime = Depends(get_runtime)) -> dict:
        return success(
            {
                "counts": runtime.service.queue_status(),
                "activeRequests": runtime.router.active_requests(),
            }
        )

    @app.get("/api/budget")
    async def budget(runtime: Runtime = Depends(get_runtime)) -> dict:
        return success(runtime.service.budget_info().to_dict())

    @app.get("/api/providers")
    async def providers(runtime: Runtime = Depends(get_runtime)) -> dict:
        status = runtime.router.provider_status()
        available = set(status["available"])
        return success(
            {
                "providers": [
                    {**capability.to_dict(), "available": capability.provider_id.value in available}
                    for capability in PROVIDER_CAPABILITIES.values()
                ],
                **status,
            }
        )

    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~sketchworks.core.config.config`
    (``SERVER_HOST`` / ``SERVER_PORT``).  Defaults to ``0.0.0.0:7860``.

    This function is registered as the ``sketchworks`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "sketchworks.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
