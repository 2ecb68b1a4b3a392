from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """An expected failure that the HTTP layer renders as an error envelope.

    ``status_code`` and ``error_code`` are pinned per subclass; ``detail`` is
    echoed to the client as ``error.details`` so it must never carry secrets.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def headers(self) -> Dict[str, str]:
        return {}


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bad credentials, or a token that is expired, revoked, reused or unbound."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Throttled or blocked; ``retry_after`` (seconds) becomes ``Retry-After``."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after

    @property
    def headers(self) -> Dict[str, str]:
        if self.retry_after is None:
            return {}
        return {"Retry-After": str(max(1, int(self.retry_after)))}


class ServerError(ServiceError):
    """Store or internal failure; clients only ever see an opaque message."""

    status_code = 500
    error_code = "server_error"


class ConfigurationError(RuntimeError):
    """Fatal misconfiguration detected while wiring services at startup."""
