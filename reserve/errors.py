# reserve/errors.py
"""
Error taxonomy for the compute broker.

Every error carries a stable upper-snake `code`, a one-line `message`, a
`details` dict that is safe to return over the API, and a `retryable` hint.
The HTTP layer maps each class to a status code via `http_status`.

None of these are retried inside the broker; retries belong to the caller
(or to the oracle's own delivery guarantees).
"""

from typing import Any, Dict, Optional


def _truncate(value: Any, max_len: int = 256) -> Any:
    """Shorten large strings/bytes so error details stay log-friendly."""
    if isinstance(value, (bytes, bytearray)):
        value = "0x" + bytes(value).hex()
    if isinstance(value, str) and len(value) > max_len:
        return value[:max_len] + "..."
    return value


class BrokerError(Exception):
    code: str = "E_BROKER"
    http_status: int = 500
    retryable: bool = False

    def __init__(self, message: str = "broker error", *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = {k: _truncate(v) for k, v in (details or {}).items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class InvalidRequest(BrokerError):
    code = "E_INVALID_REQUEST"
    http_status = 422


class ConfigurationMissing(BrokerError):
    """No gas budget configured for the model; fixed only by an administrator."""

    code = "E_CONFIG_MISSING"
    http_status = 409

    def __init__(self, model_id: int) -> None:
        super().__init__(
            f"no gas budget configured for model {model_id}",
            details={"model_id": model_id},
        )
        self.model_id = model_id


class UpstreamUnavailable(BrokerError):
    """The oracle query or call failed. Safe for the caller to retry."""

    code = "E_UPSTREAM_UNAVAILABLE"
    http_status = 502
    retryable = True


class RegistrationFailed(UpstreamUnavailable):
    """The oracle refused or failed the registration call; no record was created."""

    code = "E_REGISTRATION_FAILED"


class Unauthorized(BrokerError):
    """A callback arrived from a principal other than the oracle endpoint."""

    code = "E_UNAUTHORIZED"
    http_status = 401

    def __init__(self, expected: str, actual: Optional[str]) -> None:
        super().__init__(
            "callback caller is not the configured oracle endpoint",
            details={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class Forbidden(BrokerError):
    """An administrative operation was attempted by a non-administrator."""

    code = "E_FORBIDDEN"
    http_status = 403

    def __init__(self, actual: Optional[str]) -> None:
        super().__init__("caller is not the administrator", details={"actual": actual})
        self.actual = actual


class UnknownRequest(BrokerError):
    code = "E_UNKNOWN_REQUEST"
    http_status = 404

    def __init__(self, request_id: int) -> None:
        super().__init__(f"no request record for id {request_id}", details={"request_id": str(request_id)})
        self.request_id = request_id


class AlreadyResolved(BrokerError):
    """Raised only under the `reject` resolution policy."""

    code = "E_ALREADY_RESOLVED"
    http_status = 409

    def __init__(self, request_id: int) -> None:
        super().__init__(f"request {request_id} is already resolved", details={"request_id": str(request_id)})
        self.request_id = request_id


class RequestIdCollision(BrokerError):
    """The oracle handed out an id that already has a record. Internal consistency failure."""

    code = "E_ID_COLLISION"
    http_status = 500

    def __init__(self, request_id: int) -> None:
        super().__init__(
            f"oracle returned request id {request_id} which already has a record",
            details={"request_id": str(request_id)},
        )
        self.request_id = request_id
