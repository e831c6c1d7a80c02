"""Request router: provider selection, retry and fallback for one generation.

The router is the only component that retries provider calls.  A single
:meth:`RequestRouter.execute` call makes up to ``max_attempts`` provider
attempts:

- ``len(options.fallback_providers) + 1`` when fallbacks are given, otherwise
  the configured default (3).
- Each attempt selects a provider (or takes the next queued fallback),
  resolves its credential, waits on the shared rate limiter, then calls the
  client under the provider timeout.
- A non-retryable error ends the loop at once.  A retryable error moves to
  the next fallback if one is queued, otherwise waits
  ``min(1000 * 2**(attempt-1), 10000)`` ms (only when attempts remain).

When every attempt fails, :class:`GenerationFailed` carries the last error and
the full error list.

Observers
---------
Callables registered with :meth:`RequestRouter.add_observer` receive a
:class:`RouterEvent` for ``started``, ``progress``, ``completed`` and
``failed``.  Observer exceptions are logged and never affect the request.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from sketchworks.providers.base import ProviderClient
from sketchworks.providers.capabilities import PROVIDER_CAPABILITIES, ProviderId
from sketchworks.providers.registry import create_client
from sketchworks.providers.selector import ProviderSelector

from .errors import ErrorKind, GenerationFailed, ProviderCallError, ProviderError
from .models import GenerationOptions, GenerationRequest, GenerationResult
from .rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 10_000

ClientFactory = Callable[[ProviderId, str], ProviderClient]


def backoff_ms(attempt: int) -> int:
    """Delay after the given (1-based) failed attempt."""
    return min(1000 * 2 ** (attempt - 1), MAX_BACKOFF_MS)


class CredentialStore:
    """Read-only view of the configured provider API keys."""

    def __init__(self, keys: Mapping[str, str | None]) -> None:
        self._keys: dict[ProviderId, str] = {}
        for name, key in keys.items():
            if key and key.strip():
                try:
                    self._keys[ProviderId(name)] = key.strip()
                except ValueError:
                    logger.warning(f"Ignoring credential for unknown provider '{name}'")

    def get(self, provider_id: ProviderId) -> str | None:
        return self._keys.get(provider_id)

    def available(self) -> list[ProviderId]:
        return [provider_id for provider_id in PROVIDER_CAPABILITIES if provider_id in self._keys]


@dataclass(frozen=True)
class RouterEvent:
    kind: str
    request_id: str
    data: dict[str, Any] = field(default_factory=dict)


Observer = Callable[[RouterEvent], None]


@dataclass
class _RequestState:
    request_id: str
    request: GenerationRequest
    started_at: float
    max_attempts: int
    attempts: int = 0
    provider: ProviderId | None = None
    errors: list[ProviderError] = field(default_factory=list)


class RequestRouter:
    """Execute generation requests against the configured providers.

    Args:
        credentials: Provider API keys.
        selector: Provider selector; a default one is created when omitted.
        rate_limiter: Limiter shared by every worker; unlimited when omitted.
        client_factory: Builds a client for a provider and key.  Defaults to
            :func:`~sketchworks.providers.registry.create_client` bound to
            ``http_client``.
        http_client: Shared ``httpx.AsyncClient`` for the default factory.
        timeout_s: Per-call provider timeout.
        default_attempts: Attempts when the request has no fallbacks.
        sleep: Coroutine used for backoff waits (injectable for tests).
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        selector: ProviderSelector | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        client_factory: ClientFactory | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = 120.0,
        default_attempts: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if default_attempts < 1:
            raise ValueError("default_attempts must be >= 1")
        self.credentials = credentials
        self.selector = selector or ProviderSelector()
        self.rate_limiter = rate_limiter
        self.timeout_s = timeout_s
        self.default_attempts = default_attempts
        self._sleep = sleep
        self._http = http_client
        self._client_factory = client_factory or self._default_factory
        self._clients: dict[ProviderId, ProviderClient] = {}
        self._observers: list[Observer] = []
        self._active: dict[str, _RequestState] = {}

    def _default_factory(self, provider_id: ProviderId, api_key: str) -> ProviderClient:
        return create_client(provider_id, api_key, http_client=self._http, timeout_s=self.timeout_s)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _emit(self, kind: str, request_id: str, **data: Any) -> None:
        event = RouterEvent(kind=kind, request_id=request_id, data=data)
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception(f"Router observer failed handling '{kind}' event")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self, request: GenerationRequest, options: GenerationOptions | None = None
    ) -> GenerationResult:
        """Run a request to success or exhaustion.

        Raises:
            GenerationFailed: When no attempt succeeded.
        """
        options = options or GenerationOptions()
        fallbacks = list(options.fallback_providers)
        state = _RequestState(
            request_id=uuid.uuid4().hex,
            request=request,
            started_at=time.monotonic(),
            max_attempts=len(fallbacks) + 1 if fallbacks else self.default_attempts,
        )
        self._active[state.request_id] = state
        self._emit("started", state.request_id, operation=request.operation)
        try:
            result = await self._run(state, options, fallbacks)
        except GenerationFailed as failure:
            self._emit("failed", state.request_id, error=failure.error.to_dict())
            raise
        finally:
            self._active.pop(state.request_id, None)
        self._emit("completed", state.request_id, provider=result.provider)
        return result

    async def _run(
        self, state: _RequestState, options: GenerationOptions, fallbacks: list[str]
    ) -> GenerationResult:
        forced: str | None = None
        last_error: ProviderError | None = None

        while state.attempts < state.max_attempts:
            state.attempts += 1
            try:
                return await self._attempt(state, options, forced)
            except ProviderCallError as e:
                last_error = e.error
            state.errors.append(last_error)
            logger.warning(
                f"Attempt {state.attempts}/{state.max_attempts} on {last_error.provider} "
                f"failed: {last_error.code}: {last_error.message}"
            )

            if not last_error.is_retryable:
                break
            if fallbacks:
                forced = fallbacks.pop(0)
                logger.info(f"Falling back to provider {forced}")
                continue
            forced = None
            if state.attempts < state.max_attempts:
                delay = backoff_ms(state.attempts)
                logger.info(f"Retrying in {delay}ms")
                await self._sleep(delay / 1000)

        if last_error is None:
            raise RuntimeError("Request finished without a provider attempt")
        raise GenerationFailed(error=last_error, errors=list(state.errors), attempts=state.attempts)

    async def _attempt(
        self, state: _RequestState, options: GenerationOptions, forced: str | None
    ) -> GenerationResult:
        provider_id = self._resolve_provider(state.request, options, forced)
        state.provider = provider_id

        api_key = self.credentials.get(provider_id)
        if not api_key:
            raise ProviderCallError(
                ProviderError(
                    kind=ErrorKind.NO_API_KEY,
                    message=f"No API key configured for provider {provider_id.value}",
                    provider=provider_id.value,
                )
            )
        client = self._client(provider_id, api_key)

        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

        self._emit(
            "progress",
            state.request_id,
            provider=provider_id.value,
            attempt=state.attempts,
            stage="generating",
        )
        try:
            return await asyncio.wait_for(client.generate(state.request), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise ProviderCallError(
                ProviderError(
                    kind=ErrorKind.TIMEOUT,
                    message=f"Provider call exceeded {self.timeout_s:.0f}s",
                    provider=provider_id.value,
                )
            ) from e
        except ProviderCallError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error from provider {provider_id.value}")
            raise ProviderCallError(
                ProviderError(kind=ErrorKind.UNKNOWN, message=str(e), provider=provider_id.value)
            ) from e

    def _resolve_provider(
        self, request: GenerationRequest, options: GenerationOptions, forced: str | None
    ) -> ProviderId:
        if forced is not None:
            try:
                return ProviderId(forced)
            except ValueError:
                raise ProviderCallError(
                    ProviderError(
                        kind=ErrorKind.NO_PROVIDER,
                        message=f"Unknown fallback provider '{forced}'",
                        provider=forced,
                    )
                ) from None
        return self.selector.select(
            request,
            self.credentials.available(),
            priority=options.priority,
            preferred=options.provider,
        )

    def _client(self, provider_id: ProviderId, api_key: str) -> ProviderClient:
        client = self._clients.get(provider_id)
        if client is None:
            client = self._client_factory(provider_id, api_key)
            self._clients[provider_id] = client
        return client

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def active_requests(self) -> list[dict[str, Any]]:
        now = time.monotonic()
        return [
            {
                "requestId": state.request_id,
                "operation": state.request.operation,
                "provider": state.provider.value if state.provider else None,
                "attempts": state.attempts,
                "elapsedMs": int((now - state.started_at) * 1000),
            }
            for state in self._active.values()
        ]

    def provider_status(self) -> dict[str, Any]:
        available = [provider_id.value for provider_id in self.credentials.available()]
        unavailable = [p.value for p in PROVIDER_CAPABILITIES if p.value not in available]
        return {
            "available": available,
            "unavailable": unavailable,
            "total": len(PROVIDER_CAPABILITIES),
        }

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
