"""Error taxonomy for request admission.

Every failure raised by the gate derives from :class:`GateError`. Each class
carries the HTTP status and the stable machine-readable code used when the
error is rendered, plus a ``reason`` that is only ever logged.
"""

from __future__ import annotations


class GateError(RuntimeError):
    """Base exception raised for admission failures."""

    status_code = 500
    code = "INTERNAL_ERROR"
    public_message = "Internal error"

    def __init__(self, reason: str = "") -> None:
        super().__init__(reason or self.public_message)
        self.reason = reason or self.public_message


class AuthNotConfiguredError(GateError):
    """Raised when the shared secret is not set.

    Rendered as service unavailable so operators can tell a missing
    credential apart from a rejected one.
    """

    status_code = 503
    code = "AUTH_NOT_CONFIGURED"
    public_message = "AGENT_API_SECRET not configured"


class AuthError(GateError):
    """Base class for credential rejections.

    All subclasses render with the same status, code and message so a caller
    cannot tell which check failed.
    """

    status_code = 401
    code = "UNAUTHORIZED"
    public_message = "Unauthorized"


class MalformedRequestError(AuthError):
    """Raised when required headers or body fields are missing or invalid."""


class StaleTimestampError(AuthError):
    """Raised when the claimed timestamp falls outside the skew window."""


class InvalidSignatureError(AuthError):
    """Raised when a MAC or wallet signature does not match."""


class ReplayedNonceError(AuthError):
    """Raised when a valid credential reuses an already consumed nonce."""


class RateLimitExceededError(GateError):
    """Raised when a caller exceeds its write budget for the current window."""

    status_code = 429
    code = "RATE_LIMITED"
    public_message = "Rate limited - wait before retrying"

    def __init__(self, retry_after: int, reason: str = "") -> None:
        super().__init__(reason)
        self.retry_after = retry_after


class StoreUnavailableError(GateError):
    """Raised by a storage tier whose backend cannot be reached."""

    status_code = 503
    code = "STORE_UNAVAILABLE"
    public_message = "Storage backend unavailable"


class NonceStoreUnavailableError(StoreUnavailableError):
    """Raised by a nonce store when its backend cannot answer."""


class RateStoreUnavailableError(StoreUnavailableError):
    """Raised by a rate bucket store when its backend cannot answer."""
