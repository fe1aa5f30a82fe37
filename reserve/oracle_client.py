# reserve/oracle_client.py
"""
Boundary to the external compute oracle. Two operations:

  register(model_id, input, callback_target, gas_limit, callback_data, payment) -> request_id
  fee(model_id, gas_limit) -> fee

The oracle later delivers results out of band by calling the broker's callback
endpoint; nothing here waits for that.

Configuration (env vars):
  MOCK_ORACLE=true          (in-process mock for dev/tests; default)
  ORACLE_URL=https://...    (HTTP oracle gateway when MOCK_ORACLE=false)
  ORACLE_TIMEOUT=10         (seconds, HTTP backend)
  MOCK_ORACLE_BASE_FEE=100000000000000
  MOCK_ORACLE_GAS_PRICE=1000000000

Usage:
  import reserve.oracle_client as oracle
  fee = oracle.fee(11, 5_000_000)
  rid = oracle.register(11, b"Hello World", "ai-reserve", 5_000_000, b"", payment=fee)
"""

import os
import time
import threading
from typing import Dict, Any, List

import requests

from reserve import monitoring
from reserve.errors import RegistrationFailed, UpstreamUnavailable

MOCK_ORACLE = os.getenv("MOCK_ORACLE", "true").lower() in ("1", "true", "yes")
ORACLE_URL = os.getenv("ORACLE_URL", "").rstrip("/")
ORACLE_TIMEOUT = float(os.getenv("ORACLE_TIMEOUT", "10"))


# ---------------------------------------------------------------------------
# Mock backend
# ---------------------------------------------------------------------------
class MockOracle:
    """
    Deterministic in-process oracle used in dev/tests. Hands out sequential ids,
    prices requests linearly in gas and refuses payments below the fee.
    """

    def __init__(self, base_fee: int = 10 ** 14, gas_price: int = 10 ** 9):
        self.base_fee = base_fee
        self.gas_price = gas_price
        self.registrations: List[Dict[str, Any]] = []
        self.fail_with: Exception = None
        self._next_id = 1
        self._lock = threading.Lock()

    def fee(self, model_id: int, gas_limit: int) -> int:
        if self.fail_with is not None:
            raise self.fail_with
        return self.base_fee + gas_limit * self.gas_price

    def register(self, model_id: int, input: bytes, callback_target: str, gas_limit: int,
                 callback_data: bytes, payment: int) -> int:
        if self.fail_with is not None:
            raise self.fail_with
        required = self.fee(model_id, gas_limit)
        if payment < required:
            raise RegistrationFailed(
                "payment does not cover the oracle fee",
                details={"required": required, "payment": payment},
            )
        with self._lock:
            request_id = self._next_id
            self._next_id += 1
            self.registrations.append({
                "request_id": request_id,
                "model_id": model_id,
                "input": bytes(input),
                "callback_target": callback_target,
                "gas_limit": gas_limit,
                "callback_data": bytes(callback_data),
                "payment": payment,
            })
        return request_id

    def reset(self):
        """Reset all state (useful for tests)."""
        with self._lock:
            self.registrations.clear()
            self.fail_with = None
            self._next_id = 1


mock_oracle = MockOracle(
    base_fee=int(os.getenv("MOCK_ORACLE_BASE_FEE", str(10 ** 14))),
    gas_price=int(os.getenv("MOCK_ORACLE_GAS_PRICE", str(10 ** 9))),
)


# ---------------------------------------------------------------------------
# HTTP backend
# ---------------------------------------------------------------------------
def _http_json(method: str, path: str, **kwargs) -> Dict[str, Any]:
    if not ORACLE_URL:
        raise UpstreamUnavailable("ORACLE_URL is not configured")
    resp = requests.request(method, f"{ORACLE_URL}{path}", timeout=ORACLE_TIMEOUT, **kwargs)
    resp.raise_for_status()
    return resp.json()


def _http_fee(model_id: int, gas_limit: int) -> int:
    body = _http_json("GET", "/fee", params={"model_id": model_id, "gas_limit": gas_limit})
    return int(body["fee"])


def _http_register(model_id: int, input: bytes, callback_target: str, gas_limit: int,
                   callback_data: bytes, payment: int) -> int:
    body = _http_json("POST", "/register", json={
        "model_id": model_id,
        "input": "0x" + input.hex(),
        "callback_target": callback_target,
        "gas_limit": gas_limit,
        "callback_data": "0x" + callback_data.hex(),
        # wei-sized amounts do not fit a JSON double
        "payment": str(payment),
    })
    return int(body["request_id"])


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def fee(model_id: int, gas_limit: int) -> int:
    """Current oracle fee for a request on `model_id` with `gas_limit` callback gas."""
    start = time.time()
    try:
        if MOCK_ORACLE:
            value = mock_oracle.fee(model_id, gas_limit)
        else:
            value = _http_fee(model_id, gas_limit)
    except UpstreamUnavailable:
        monitoring.observe_oracle_call(start, "fee", "fail")
        raise
    except (requests.RequestException, KeyError, TypeError, ValueError) as e:
        monitoring.observe_oracle_call(start, "fee", "fail")
        raise UpstreamUnavailable(f"oracle fee query failed: {e}") from e
    if value < 0:
        monitoring.observe_oracle_call(start, "fee", "fail")
        raise UpstreamUnavailable("oracle returned a negative fee", details={"fee": value})
    monitoring.observe_oracle_call(start, "fee", "success")
    return value


def register(model_id: int, input: bytes, callback_target: str, gas_limit: int,
             callback_data: bytes, payment: int) -> int:
    """
    Register a request with the oracle, forwarding `payment`. Returns the
    oracle-assigned request id. Raises RegistrationFailed on any failure.
    """
    start = time.time()
    try:
        if MOCK_ORACLE:
            request_id = mock_oracle.register(model_id, input, callback_target, gas_limit,
                                              callback_data, payment)
        else:
            request_id = _http_register(model_id, input, callback_target, gas_limit,
                                        callback_data, payment)
    except RegistrationFailed:
        monitoring.observe_oracle_call(start, "register", "fail")
        raise
    except UpstreamUnavailable as e:
        monitoring.observe_oracle_call(start, "register", "fail")
        raise RegistrationFailed(e.message, details=e.details) from e
    except (requests.RequestException, KeyError, TypeError, ValueError) as e:
        monitoring.observe_oracle_call(start, "register", "fail")
        raise RegistrationFailed(f"oracle registration failed: {e}") from e
    if request_id < 0:
        monitoring.observe_oracle_call(start, "register", "fail")
        raise RegistrationFailed("oracle returned a negative request id", details={"request_id": request_id})
    monitoring.observe_oracle_call(start, "register", "success")
    return request_id
