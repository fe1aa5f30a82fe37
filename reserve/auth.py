# reserve/auth.py
"""
Principals, callback authentication, admin gate and rate limiting.

Every API caller is resolved to a principal (an identity string). The broker
then applies two capability checks on top of it:
- authenticate_callback: only the configured oracle endpoint may resolve requests
- require_admin: only the administrator may change gas budgets

Env vars:
- MOCK_AUTH (default: false): dev mode; principal taken from the x-principal header,
  so any client can claim the oracle or admin identity. Never enable it in production.
- API_PRINCIPALS: comma-separated key=principal pairs
- API_PRINCIPALS_FILE: optional path to a file with one key=principal per line
- RATE_LIMIT_PER_MINUTE (default: 60)
"""

import os
import hmac
import time
import logging
import threading
from typing import Optional, Tuple, Dict

from reserve.errors import Unauthorized, Forbidden

log = logging.getLogger("ai-reserve.auth")

# Configuration
MOCK_AUTH = os.getenv("MOCK_AUTH", "false").lower() in ("1", "true", "yes")
RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))
API_PRINCIPALS_ENV = os.getenv("API_PRINCIPALS", "")
API_PRINCIPALS_FILE = os.getenv("API_PRINCIPALS_FILE", "")
ANONYMOUS = "anonymous"


def _parse_pair(line: str, principals: Dict[str, str]) -> None:
    key, sep, principal = line.strip().partition("=")
    if sep and key.strip() and principal.strip():
        principals[key.strip()] = principal.strip()


def _load_api_principals() -> Dict[str, str]:
    principals: Dict[str, str] = {}
    for pair in API_PRINCIPALS_ENV.split(","):
        _parse_pair(pair, principals)
    if API_PRINCIPALS_FILE:
        with open(API_PRINCIPALS_FILE, "r", encoding="utf-8") as f:
            for line in f:
                _parse_pair(line, principals)
    return principals


API_PRINCIPALS = _load_api_principals()


def _same(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def resolve_principal(api_key: Optional[str], claimed: Optional[str] = None) -> Optional[str]:
    """
    Map a request's API key to its principal. Returns None for unknown keys.
    With MOCK_AUTH=true the claimed principal (x-principal header) is trusted.
    """
    if MOCK_AUTH:
        return claimed or ANONYMOUS
    if not api_key:
        return None
    for key, principal in API_PRINCIPALS.items():
        if _same(key, api_key):
            return principal
    return None


def authenticate_callback(expected: str, caller: Optional[str]) -> None:
    """Raise Unauthorized unless `caller` is exactly the oracle endpoint `expected`."""
    if not caller or not _same(expected, caller):
        log.warning("Rejected callback from unexpected caller", extra={"expected": expected, "actual": caller})
        raise Unauthorized(expected=expected, actual=caller)


def require_admin(admin: str, caller: Optional[str]) -> None:
    if not caller or not _same(admin, caller):
        log.warning("Rejected admin operation", extra={"actual": caller})
        raise Forbidden(actual=caller)


class InMemoryFixedWindowLimiter:
    """Thread-safe in-memory fixed-window rate limiter (per-process)."""

    def __init__(self, limit_per_minute: int = 60):
        self.limit = limit_per_minute
        self._store: Dict[str, Tuple[int, int]] = {}  # principal -> (window_minute, count)
        self._lock = threading.Lock()

    def allow_request(self, principal: str) -> Tuple[bool, Optional[int]]:
        window = int(time.time()) // 60
        with self._lock:
            wstart, count = self._store.get(principal, (window, 0))
            if wstart != window:
                count = 0
            if count >= self.limit:
                return False, 0
            self._store[principal] = (window, count + 1)
            return True, self.limit - (count + 1)

    def reset(self):
        """Reset all state (useful for tests)."""
        with self._lock:
            self._store.clear()


_rate_limiter = InMemoryFixedWindowLimiter(RATE_LIMIT_PER_MINUTE)


def check_rate_limit(principal: str) -> Tuple[bool, Optional[int]]:
    """Check and consume quota. Returns (allowed, remaining)."""
    if MOCK_AUTH:
        return True, None
    return _rate_limiter.allow_request(principal)


def get_limiter() -> InMemoryFixedWindowLimiter:
    """Return the current limiter instance (for testing)."""
    return _rate_limiter


def warn_if_mock_auth() -> bool:
    """Log a startup warning when the x-principal header is trusted. Returns MOCK_AUTH."""
    if MOCK_AUTH:
        log.warning(
            "MOCK_AUTH is enabled: principals are taken from the x-principal header without verification",
            extra={"header": "x-principal"},
        )
    return MOCK_AUTH
