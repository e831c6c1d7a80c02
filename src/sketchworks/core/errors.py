"""Error taxonomy for the generation pipeline.

Every failure that crosses a component boundary is normalised into one of the
types below before it leaves the component that observed it:

- :class:`ErrorKind` is the closed set of failure kinds.  Provider clients
  tag errors with a kind exactly once, at the HTTP boundary.
- :func:`is_retryable` is a pure function over the kind; nothing downstream
  inspects messages or status codes again.
- :class:`ProviderError` is the normalised result of a failed provider call.
- :class:`SketchworksError` is the exception raised by pipeline components
  (admission, moderation, storage, queue).  It always carries
  ``code``, ``message`` and ``retryable``.

Error categories
----------------
=============== ============================================ ===============
Category        Examples                                     Job-level retry
=============== ============================================ ===============
admission       MISSING_REQUIRED_FIELDS, QUOTA_NEARLY_EXC…   n/a (no job)
moderation      INPUT_REJECTED, OUTPUT_REJECTED              never
provider        TIMEOUT, RATE_LIMIT_EXCEEDED, AUTHENTICAT…   never (router)
infrastructure  SERVICE_UNAVAILABLE, STORAGE_UNAVAILABLE     yes, backoff
=============== ============================================ ===============
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ErrorKind(str, Enum):
    """Closed set of provider-call failure kinds."""

    NETWORK = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMIT_EXCEEDED"
    SERVER = "PROVIDER_SERVER_ERROR"
    AUTHENTICATION = "AUTHENTICATION_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    QUOTA = "QUOTA_EXCEEDED"
    CONTENT_POLICY = "CONTENT_POLICY_VIOLATION"
    UNSUPPORTED = "UNSUPPORTED_REQUEST"
    NO_API_KEY = "NO_API_KEY"
    NO_PROVIDER = "NO_PROVIDER_AVAILABLE"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    UNKNOWN = "PROVIDER_ERROR"


_RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.NETWORK,
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMITED,
        ErrorKind.SERVER,
    }
)

_SUGGESTED_ACTIONS = {
    ErrorKind.NETWORK: "Check network connectivity and try again",
    ErrorKind.TIMEOUT: "Try again with a simpler request",
    ErrorKind.RATE_LIMITED: "Wait before making more requests",
    ErrorKind.SERVER: "The provider is having trouble; try again shortly",
    ErrorKind.AUTHENTICATION: "Check the provider API key and its permissions",
    ErrorKind.INVALID_REQUEST: "Check the request parameters",
    ErrorKind.QUOTA: "Check the provider account quota and billing",
    ErrorKind.CONTENT_POLICY: "Rephrase the prompt or use a different image",
    ErrorKind.UNSUPPORTED: "Choose a different provider or request type",
    ErrorKind.NO_API_KEY: "Configure an API key for this provider",
    ErrorKind.NO_PROVIDER: "Configure a provider that supports this request",
    ErrorKind.MALFORMED_RESPONSE: "Try again or contact support",
    ErrorKind.UNKNOWN: "Try again or contact support",
}


def is_retryable(kind: ErrorKind) -> bool:
    """Return True when a failure of this kind may succeed on another attempt."""
    return kind in _RETRYABLE_KINDS


def kind_for_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code returned by a provider to an :class:`ErrorKind`."""
    if status_code in (401, 403):
        return ErrorKind.AUTHENTICATION
    if status_code == 402:
        return ErrorKind.QUOTA
    if status_code == 408:
        return ErrorKind.TIMEOUT
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code >= 500:
        return ErrorKind.SERVER
    if 400 <= status_code < 500:
        return ErrorKind.INVALID_REQUEST
    return ErrorKind.UNKNOWN


@dataclass(frozen=True)
class ProviderError:
    """Normalised failure of a single provider call.

    Attributes:
        kind: Tagged failure kind; drives ``is_retryable``.
        message: Human-readable description from the provider or transport.
        provider: Provider id value the call was made against.
        status_code: HTTP status, when the failure came from a response.
    """

    kind: ErrorKind
    message: str
    provider: str
    status_code: int | None = None

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def is_retryable(self) -> bool:
        return is_retryable(self.kind)

    @property
    def suggested_action(self) -> str:
        return _SUGGESTED_ACTIONS[self.kind]

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "provider": self.provider,
            "isRetryable": self.is_retryable,
            "suggestedAction": self.suggested_action,
        }


class ProviderCallError(Exception):
    """Raised by provider clients; carries the normalised :class:`ProviderError`."""

    def __init__(self, error: ProviderError) -> None:
        super().__init__(f"{error.code}: {error.message}")
        self.error = error


class SketchworksError(Exception):
    """Base error for pipeline components.

    Args:
        code: Stable machine-readable error code (e.g. ``INPUT_REJECTED``).
        message: Human-readable description.
        retryable: Whether the job that hit this error may be retried.
        http_status: Status the HTTP layer should answer with.
    """

    code: str = "INTERNAL_ERROR"
    retryable: bool = False
    http_status: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        if http_status is not None:
            self.http_status = http_status

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class AdmissionError(SketchworksError):
    """Submission rejected before any job exists."""

    http_status = 400

    def __init__(
        self,
        code: str,
        message: str,
        *,
        http_status: int = 400,
        retry_after_seconds: int | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message, code=code, retryable=False, http_status=http_status)
        self.retry_after_seconds = retry_after_seconds
        self.details = details or {}


class ModerationRejected(SketchworksError):
    """Content failed a moderation gate; terminal for the job."""

    retryable = False
    http_status = 422


class InfrastructureError(SketchworksError):
    """A backing service (queue, storage, database) is unreachable."""

    code = "SERVICE_UNAVAILABLE"
    retryable = True
    http_status = 503


class AssetNotFound(SketchworksError):
    code = "ASSET_NOT_FOUND"
    http_status = 404


class JobNotFound(SketchworksError):
    code = "JOB_NOT_FOUND"
    http_status = 404


class InvalidTransition(SketchworksError):
    """A status change would move an asset backward or out of a terminal state."""

    code = "INVALID_TRANSITION"
    http_status = 409


class JobConflict(SketchworksError):
    """An asset already has a job waiting or in flight."""

    code = "JOB_ALREADY_IN_FLIGHT"
    http_status = 409


class JobCancelled(SketchworksError):
    code = "CANCELLED"
    retryable = False


@dataclass
class GenerationFailed(Exception):
    """Raised by the request router once every attempt has failed.

    Attributes:
        error: The last provider error; its code becomes the asset error code.
        errors: Every error recorded across attempts, in order.
        attempts: Number of provider attempts made.
    """

    error: ProviderError
    errors: list[ProviderError] = field(default_factory=list)
    attempts: int = 0

    def __post_init__(self) -> None:
        super().__init__(f"{self.error.code}: {self.error.message}")
