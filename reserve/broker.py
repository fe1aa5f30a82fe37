# reserve/broker.py
"""
The request broker: a two-phase protocol correlated only by the persisted
request id.

Phase 1, submit: resolve the gas budget, register with the oracle (which
assigns the id and takes the payment), then store a pending record.
Phase 2, resolve: runs later on a different call stack when the oracle calls
back; authenticates the caller, then updates the record and the result cache.
"""
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

# Import modules (not bare functions) so monkeypatching in tests works correctly
import reserve.oracle_client as _oracle
from reserve import db as dbmod
from reserve import monitoring
from reserve.auth import authenticate_callback, require_admin
from reserve.config import BrokerSettings, MAX_GAS_LIMIT
from reserve.errors import (
    AlreadyResolved,
    BrokerError,
    ConfigurationMissing,
    InvalidRequest,
    UnknownRequest,
    UpstreamUnavailable,
)
from reserve.events import EventLog, REQUEST_RESOLVED, REQUEST_SUBMITTED
from reserve.models import STATUS_RESOLVED

log = monitoring.logger

# (amount, prompt) -> input payload sent to the oracle
PromptBuilder = Callable[[int, str], bytes]


def default_prompt_builder(amount: int, prompt: str) -> bytes:
    return prompt.encode("utf-8")


def _check_uint(name: str, value: Any, upper: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidRequest(f"{name} must be a non-negative integer", details={name: repr(value)})
    if upper is not None and value > upper:
        raise InvalidRequest(f"{name} exceeds {upper}", details={name: value})
    return value


class KeyedLock:
    """Mutual exclusion per key. Locks are dropped once nobody holds or waits on them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Any, List] = {}  # key -> [lock, users]

    @contextmanager
    def hold(self, key: Any) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class RequestBroker:
    def __init__(self, settings: Optional[BrokerSettings] = None,
                 prompt_builder: Optional[PromptBuilder] = None,
                 events: Optional[EventLog] = None):
        self.settings = settings or BrokerSettings()
        self.prompt_builder = prompt_builder or default_prompt_builder
        self.events = events or EventLog()
        self._request_locks = KeyedLock()

    @property
    def model_id(self) -> int:
        return self.settings.model_id

    @property
    def oracle_address(self) -> str:
        return self.settings.oracle_address

    def seed_defaults(self) -> int:
        """Make sure every served model has a gas budget."""
        return dbmod.seed_gas_budgets(self.settings.default_gas_budgets)

    def refresh_pending_gauge(self) -> int:
        n = dbmod.count_pending()
        monitoring.set_pending_requests(n)
        return n

    # ------------------------------------------------------------------
    # Fee estimation
    # ------------------------------------------------------------------
    def estimate_fee(self, model_id: Optional[int] = None, gas_limit: Optional[int] = None) -> int:
        """
        Oracle fee for `model_id` (default: the served model). When `gas_limit`
        is omitted the model's configured budget is used. Read-only.
        """
        model_id = self.model_id if model_id is None else _check_uint("model_id", model_id)
        return _oracle.fee(model_id, self.effective_gas_limit(model_id, gas_limit))

    def effective_gas_limit(self, model_id: int, gas_limit: Optional[int] = None) -> int:
        """`gas_limit` when given, else the configured budget for `model_id`."""
        if gas_limit is None:
            gas_limit = dbmod.get_gas_budget(model_id)
            if gas_limit is None:
                raise ConfigurationMissing(model_id)
            return gas_limit
        return _check_uint("gas_limit", gas_limit, MAX_GAS_LIMIT)

    # ------------------------------------------------------------------
    # Phase 1: submission
    # ------------------------------------------------------------------
    def submit(self, amount: int, prompt: str, submitter: str, payment: int) -> int:
        """
        Register a compute request with the oracle and record it as pending.
        Returns the oracle-assigned request id.
        """
        _check_uint("amount", amount)
        _check_uint("payment", payment)
        if not submitter:
            raise InvalidRequest("submitter identity is required")
        if not isinstance(prompt, str):
            raise InvalidRequest("prompt must be a string")

        model_id = self.model_id
        gas_limit = dbmod.get_gas_budget(model_id)
        if gas_limit is None:
            monitoring.inc_submission("config_missing")
            raise ConfigurationMissing(model_id)

        payload = self.prompt_builder(amount, prompt)
        callback_data = self.settings.callback_data

        try:
            request_id = _oracle.register(
                model_id, payload, self.settings.broker_address, gas_limit, callback_data, payment
            )
        except UpstreamUnavailable:
            monitoring.inc_submission("upstream_fail")
            raise

        try:
            with dbmod.session_scope() as db:
                dbmod.insert_request(
                    db,
                    request_id=request_id,
                    sender=submitter,
                    model_id=model_id,
                    input_bytes=payload,
                    prompt=prompt,
                    amount=amount,
                    payment=payment,
                    gas_limit=gas_limit,
                    callback_data=callback_data,
                )
                event = self.events.record(
                    db, REQUEST_SUBMITTED, request_id,
                    sender=submitter, model_id=model_id, prompt=prompt,
                )
        except Exception as e:
            # The oracle already holds the payment for this id.
            log.critical(
                "Oracle accepted request but the record could not be stored",
                extra={"request_id": str(request_id), "error": str(e)},
            )
            monitoring.inc_submission("collision" if isinstance(e, BrokerError) else "store_fail")
            raise

        monitoring.inc_submission("success")
        self.events.publish(event)
        self.refresh_pending_gauge()
        return request_id

    # ------------------------------------------------------------------
    # Phase 2: resolution (oracle callback)
    # ------------------------------------------------------------------
    def resolve(self, request_id: int, output: bytes, callback_data: bytes, caller: Optional[str]) -> Dict[str, Any]:
        """Apply an oracle callback. Returns the updated record as a dict."""
        try:
            authenticate_callback(self.oracle_address, caller)
        except BrokerError:
            monitoring.inc_resolution("unauthorized")
            raise
        output = bytes(output or b"")
        callback_data = bytes(callback_data or b"")

        with self._request_locks.hold(str(request_id)):
            with dbmod.session_scope() as db:
                rec = dbmod.load_request(db, request_id)
                if rec is None or not rec.sender:
                    monitoring.inc_resolution("unknown")
                    raise UnknownRequest(request_id)
                reject = self.settings.resolution_policy == "reject"
                if reject and rec.status == STATUS_RESOLVED:
                    monitoring.inc_resolution("already_resolved")
                    raise AlreadyResolved(request_id)

                model_id, input_bytes = rec.model_id, bytes(rec.input)
                # another worker on the same database may have resolved it since the read
                if not dbmod.mark_resolved(db, request_id, output, only_pending=reject):
                    monitoring.inc_resolution("already_resolved")
                    raise AlreadyResolved(request_id)
                dbmod.put_result(
                    db, model_id=model_id, input_bytes=input_bytes, output=output, request_id=request_id
                )
                event = self.events.record(
                    db, REQUEST_RESOLVED, request_id,
                    model_id=model_id, input=input_bytes, output=output, callback_data=callback_data,
                )
                db.commit()
                db.refresh(rec)
                result = rec.to_dict()

        monitoring.inc_resolution("success")
        self.events.publish(event)
        self.refresh_pending_gauge()
        return result

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------
    def set_gas_budget(self, model_id: int, gas_limit: int, caller: Optional[str]) -> None:
        require_admin(self.settings.admin_address, caller)
        _check_uint("model_id", model_id)
        _check_uint("gas_limit", gas_limit, MAX_GAS_LIMIT)
        dbmod.set_gas_budget(model_id, gas_limit)
        log.info("Gas budget updated", extra={"model_id": model_id, "gas_limit": gas_limit})

    def list_gas_budgets(self) -> Dict[int, int]:
        return dbmod.list_gas_budgets()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_result(self, model_id: int, prompt: str, amount: int = 0) -> bytes:
        """
        Last output delivered for the input this broker builds from (amount, prompt).
        b"" when nothing was ever resolved for it, which looks the same as an
        empty resolution.
        """
        return dbmod.get_result(model_id, self.prompt_builder(_check_uint("amount", amount), prompt))

    def get_request(self, request_id: int) -> Optional[Dict[str, Any]]:
        return dbmod.get_request(request_id)

    def list_events(self, after_id: int = 0, limit: int = 100, request_id: Optional[int] = None):
        return self.events.list(after_id=after_id, limit=limit, request_id=request_id)
