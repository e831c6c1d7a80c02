"""Shared pytest fixtures for Sketchworks tests.

Nothing here talks to a real provider, moderation API or bucket: provider
clients, the SafeSearch detector and the storage backend are replaced with
in-memory fakes, and the database is an in-memory SQLite handle.
"""

import asyncio
import base64
import shutil
import tempfile
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path
from typing import Generator

import pytest
from PIL import Image, ImageDraw

from sketchworks.core.assets import AssetStateMachine
from sketchworks.core.budget import BillingLedger
from sketchworks.core.config import SketchworksConfig
from sketchworks.core.database import Database
from sketchworks.core.errors import ErrorKind, ProviderCallError, ProviderError
from sketchworks.core.job_queue import JobQueue
from sketchworks.core.models import GenerationResult
from sketchworks.core.moderation import CATEGORIES, Likelihood, SafeSearchDetector
from sketchworks.core.router import CredentialStore, RequestRouter
from sketchworks.core.runtime import Runtime, build_runtime
from sketchworks.core.storage import StorageBackend, StorageBackendError
from sketchworks.providers.capabilities import ProviderId

# Outcome that makes a fake provider call block until the router times out.
HANG = object()

FIXED_NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def render_png(size: tuple[int, int] = (64, 64), fmt: str = "PNG") -> bytes:
    """Draw a small sketch-like image and encode it."""
    image = Image.new("RGB", size, (255, 255, 255))
    draw = ImageDraw.Draw(image)
    draw.line((4, 4, size[0] - 4, size[1] - 4), fill=(0, 0, 0), width=2)
    draw.ellipse((10, 10, size[0] // 2, size[1] // 2), outline=(0, 0, 0))
    buffer = BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Fakes.
# ---------------------------------------------------------------------------


class FakeProviderClient:
    """Provider client that replays scripted outcomes.

    Each call pops the next outcome: an exception is raised, :data:`HANG`
    blocks, anything else is returned.  With no outcomes left a default
    result is returned.
    """

    def __init__(self, provider_id: str, outcomes=()):
        self.provider_id = ProviderId(provider_id)
        self.outcomes = list(outcomes)
        self.calls = []
        self.closed = False

    async def generate(self, request):
        self.calls.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else make_generation_result(
            self.provider_id.value
        )
        if outcome is HANG:
            await asyncio.sleep(3600)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def aclose(self) -> None:
        self.closed = True


class RecordingSleep:
    """Drop-in for ``asyncio.sleep`` that records delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeDetector(SafeSearchDetector):
    """SafeSearch detector returning scripted verdicts.

    Args:
        results: Per-call results, consumed in order; each is a mapping of
            category overrides or an exception to raise.  Once exhausted,
            every category is ``VERY_UNLIKELY``.
        on_detect: Hook called before each verdict is produced.
    """

    def __init__(self, results=(), on_detect: Callable[[], None] | None = None):
        self.results = list(results)
        self.on_detect = on_detect
        self.images: list[bytes] = []

    async def detect(self, image: bytes) -> Mapping[str, Likelihood]:
        self.images.append(image)
        if self.on_detect is not None:
            self.on_detect()
        scores = {category: Likelihood.VERY_UNLIKELY for category in CATEGORIES}
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, BaseException):
                raise result
            scores.update(result)
        return scores


class MemoryStorageBackend(StorageBackend):
    """Dict-backed object store; the first ``fail_puts`` writes fail."""

    def __init__(self, fail_puts: int = 0):
        self.objects: dict[str, tuple[bytes, str, str]] = {}
        self.deleted: list[str] = []
        self.fail_puts = fail_puts

    def put(self, key: str, data: bytes, content_type: str, cache_control: str) -> None:
        if self.fail_puts > 0:
            self.fail_puts -= 1
            raise StorageBackendError("bucket unreachable")
        self.objects[key] = (data, content_type, cache_control)

    def delete(self, key: str) -> None:
        self.objects.pop(key, None)
        self.deleted.append(key)


def make_generation_result(
    provider: str = "gemini-tuzi",
    *,
    image: bytes | None = None,
    model_version: str = "gemini-2.5-flash-image",
    seed: int | None = 42,
    processing_time_ms: int = 1200,
) -> GenerationResult:
    return GenerationResult(
        image=image if image is not None else render_png((32, 32)),
        content_type="image/png",
        provider=provider,
        model_version=model_version,
        seed=seed,
        processing_time_ms=processing_time_ms,
    )


# ---------------------------------------------------------------------------
# Environment.
# ---------------------------------------------------------------------------


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> SketchworksConfig:
    """Configuration rooted in a temporary directory with no external services.

    Job-level backoff is zero so a delayed job is claimable immediately.
    """
    return SketchworksConfig(
        data_dir=temp_dir / "data",
        storage_dir=temp_dir / "artifacts",
        moderation_backend="noop",
        worker_enabled=False,
        job_backoff_base_ms=0,
        openai_api_key=None,
        gemini_api_key=None,
        stability_api_key=None,
        google_api_key=None,
        _env_file=None,
    )


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


# ---------------------------------------------------------------------------
# Images.
# ---------------------------------------------------------------------------


@pytest.fixture
def png_bytes() -> bytes:
    return render_png()


@pytest.fixture
def png_base64(png_bytes: bytes) -> str:
    return base64.b64encode(png_bytes).decode("ascii")


@pytest.fixture
def png_data_url(png_base64: str) -> str:
    return f"data:image/png;base64,{png_base64}"


# ---------------------------------------------------------------------------
# Persistence.
# ---------------------------------------------------------------------------


@pytest.fixture
def database() -> Generator[Database, None, None]:
    db = Database(":memory:").open()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def assets(database: Database, clock) -> AssetStateMachine:
    return AssetStateMachine(database, clock=clock)


@pytest.fixture
def job_queue(database: Database) -> JobQueue:
    return JobQueue(database, default_max_attempts=5)


@pytest.fixture
def ledger(database: Database, clock) -> BillingLedger:
    return BillingLedger(database, clock=clock)


# ---------------------------------------------------------------------------
# Providers and routing.
# ---------------------------------------------------------------------------


@pytest.fixture
def make_result():
    return make_generation_result


@pytest.fixture
def provider_error():
    """Factory for a :class:`ProviderCallError` of a given kind."""

    def factory(kind: ErrorKind, provider: str = "gemini-tuzi", message: str = "failed"):
        return ProviderCallError(ProviderError(kind=kind, message=message, provider=provider))

    return factory


@pytest.fixture
def fake_client():
    def factory(provider_id: str, *outcomes) -> FakeProviderClient:
        return FakeProviderClient(provider_id, outcomes)

    return factory


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_router(sleeps: RecordingSleep):
    """Build a router over fake clients.

    Every provider in ``clients`` gets a credential unless ``keys`` is given.
    """

    def factory(clients: Mapping[str, FakeProviderClient], keys=None, **kwargs) -> RequestRouter:
        by_id = {ProviderId(name): client for name, client in clients.items()}
        if keys is None:
            keys = {provider_id.value: f"key-{provider_id.value}" for provider_id in by_id}
        kwargs.setdefault("sleep", sleeps)
        return RequestRouter(
            CredentialStore(keys),
            client_factory=lambda provider_id, api_key: by_id[provider_id],
            **kwargs,
        )

    return factory


# ---------------------------------------------------------------------------
# Full runtime.
# ---------------------------------------------------------------------------


@pytest.fixture
def make_runtime(test_config: SketchworksConfig, make_router, fake_client, clock):
    """Build a :class:`Runtime` wired to fakes.

    Returns a factory accepting ``router``, ``detector``, ``storage_backend``
    and ``config`` overrides.  The default router has a single Gemini client
    that always succeeds.
    """

    def factory(
        *,
        router: RequestRouter | None = None,
        detector: SafeSearchDetector | None = None,
        storage_backend: StorageBackend | None = None,
        config: SketchworksConfig | None = None,
    ) -> Runtime:
        return build_runtime(
            config or test_config,
            db=Database(":memory:"),
            router=router or make_router({"gemini-tuzi": fake_client("gemini-tuzi")}),
            detector=detector or FakeDetector(),
            storage_backend=storage_backend or MemoryStorageBackend(),
            clock=clock,
        )

    return factory


# ---------------------------------------------------------------------------
# Fake handles for test modules (conftest is not importable as a module).
# ---------------------------------------------------------------------------


@pytest.fixture
def hang() -> object:
    return HANG


@pytest.fixture
def detector_factory() -> type[FakeDetector]:
    return FakeDetector


@pytest.fixture
def memory_backend() -> MemoryStorageBackend:
    return MemoryStorageBackend()


@pytest.fixture
def render_image():
    return render_png
