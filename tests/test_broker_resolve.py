# tests/test_broker_resolve.py
import pytest

import reserve.oracle_client as oracle
from reserve import db as dbmod
from reserve.broker import RequestBroker
from reserve.config import BrokerSettings
from reserve.errors import AlreadyResolved, Unauthorized, UnknownRequest
from reserve.events import REQUEST_RESOLVED

from conftest import ADMIN, MODEL_ID, ORACLE


def test_hello_world_scenario(broker, submit):
    rid = submit("Hello World")
    assert broker.get_result(MODEL_ID, "Hello World") == b""

    # a forged callback before the real one changes nothing
    with pytest.raises(Unauthorized):
        broker.resolve(rid, b"42", b"", caller="mallory")
    assert broker.get_result(MODEL_ID, "Hello World") == b""

    broker.resolve(rid, b"42", b"", caller=ORACLE)
    assert broker.get_result(MODEL_ID, "Hello World") == b"42"


def test_resolution_marks_record_resolved(broker, submit):
    rid = submit("Hello World")
    rec = broker.resolve(rid, b"42", b"\x01\x02", caller=ORACLE)

    assert rec["status"] == "resolved"
    assert rec["output"] == "0x" + b"42".hex()
    assert rec["resolution_count"] == 1
    assert rec["resolved_at"] is not None
    assert broker.get_request(rid) == rec
    assert dbmod.count_pending() == 0


def test_unauthorized_callback_leaves_record_untouched(broker, submit):
    rid = submit("Hello World")
    before = broker.get_request(rid)

    with pytest.raises(Unauthorized) as exc:
        broker.resolve(rid, b"evil", b"", caller="mallory")
    assert exc.value.expected == ORACLE
    assert exc.value.actual == "mallory"
    assert not exc.value.retryable
    assert broker.get_request(rid) == before
    assert [e["name"] for e in broker.list_events()] == ["RequestSubmitted"]


@pytest.mark.parametrize("caller", [ADMIN, None, "", ORACLE.upper(), ORACLE + " "])
def test_only_the_exact_oracle_identity_may_resolve(broker, submit, caller):
    rid = submit()
    with pytest.raises(Unauthorized):
        broker.resolve(rid, b"42", b"", caller=caller)
    assert broker.get_request(rid)["status"] == "pending"


def test_authentication_runs_before_lookup(broker):
    # an unknown id from a forged caller is reported as Unauthorized, not UnknownRequest
    with pytest.raises(Unauthorized):
        broker.resolve(12345, b"42", b"", caller="mallory")


def test_unknown_request_creates_nothing(broker):
    with pytest.raises(UnknownRequest) as exc:
        broker.resolve(12345, b"42", b"", caller=ORACLE)
    assert exc.value.request_id == 12345
    assert broker.get_request(12345) is None
    assert broker.get_result(MODEL_ID, "") == b""
    assert broker.list_events() == []


def test_cache_is_last_writer_wins_across_requests(broker, submit):
    first = submit("Hello World", sender="alice")
    second = submit("Hello World", sender="bob")

    # callbacks arrive out of submission order
    broker.resolve(second, b"from-second", b"", caller=ORACLE)
    broker.resolve(first, b"from-first", b"", caller=ORACLE)
    assert broker.get_result(MODEL_ID, "Hello World") == b"from-first"

    broker.resolve(second, b"again", b"", caller=ORACLE)
    assert broker.get_result(MODEL_ID, "Hello World") == b"again"


def test_cache_keys_are_per_input(broker, submit):
    a = submit("Hello World")
    b = submit("Goodbye")
    broker.resolve(a, b"1", b"", caller=ORACLE)
    broker.resolve(b, b"2", b"", caller=ORACLE)
    assert broker.get_result(MODEL_ID, "Hello World") == b"1"
    assert broker.get_result(MODEL_ID, "Goodbye") == b"2"
    assert broker.get_result(MODEL_ID + 1, "Hello World") == b""


def test_overwrite_policy_treats_second_callback_as_update(broker, submit):
    assert broker.settings.resolution_policy == "overwrite"
    rid = submit()
    broker.resolve(rid, b"42", b"", caller=ORACLE)
    rec = broker.resolve(rid, b"43", b"", caller=ORACLE)

    assert rec["output"] == "0x" + b"43".hex()
    assert rec["resolution_count"] == 2
    assert broker.get_result(MODEL_ID, "Hello World") == b"43"


def test_reject_policy_refuses_second_callback(settings):
    b = RequestBroker(BrokerSettings(
        model_id=settings.model_id,
        oracle_address=ORACLE,
        admin_address=ADMIN,
        default_gas_budgets=settings.default_gas_budgets,
        resolution_policy="reject",
    ))
    b.seed_defaults()
    rid = b.submit(0, "Hello World", "alice", b.estimate_fee())
    b.resolve(rid, b"42", b"", caller=ORACLE)
    before = b.get_request(rid)

    with pytest.raises(AlreadyResolved):
        b.resolve(rid, b"43", b"", caller=ORACLE)
    assert b.get_request(rid) == before
    assert b.get_result(MODEL_ID, "Hello World") == b"42"


def test_empty_output_still_counts_as_resolved(broker, submit):
    rid = submit()
    rec = broker.resolve(rid, b"", b"", caller=ORACLE)
    assert rec["status"] == "resolved"
    # indistinguishable from "never resolved" at the cache level
    assert broker.get_result(MODEL_ID, "Hello World") == b""


def test_resolution_event_echoes_callback_data(broker, submit):
    rid = submit("Hello World")
    broker.resolve(rid, b"42", b"\xca\xfe", caller=ORACLE)

    [ev] = broker.list_events(request_id=rid, after_id=1)
    assert ev["name"] == REQUEST_RESOLVED
    assert ev["payload"] == {
        "model_id": MODEL_ID,
        "input": "0x" + b"Hello World".hex(),
        "output": "0x" + b"42".hex(),
        "callback_data": "0xcafe",
    }


def test_failing_subscriber_does_not_undo_resolution(broker, submit):
    def boom(event):
        raise RuntimeError("subscriber bug")

    rid = submit()
    broker.events.subscribe(boom)
    broker.resolve(rid, b"42", b"", caller=ORACLE)
    assert broker.get_request(rid)["status"] == "resolved"


def test_gas_budget_change_does_not_touch_pending_request(broker, submit):
    rid = submit("Hello World")
    broker.set_gas_budget(MODEL_ID, 1_000_000, caller=ADMIN)

    assert oracle.mock_oracle.registrations[0]["gas_limit"] == 5_000_000
    assert broker.get_request(rid)["gas_limit"] == 5_000_000

    broker.resolve(rid, b"42", b"", caller=ORACLE)
    assert broker.get_request(rid)["gas_limit"] == 5_000_000

    later = submit("Hello again")
    assert broker.get_request(later)["gas_limit"] == 1_000_000
    assert oracle.mock_oracle.registrations[1]["gas_limit"] == 1_000_000


def test_custom_prompt_builder_finds_its_own_results(settings):
    b = RequestBroker(settings, prompt_builder=lambda amount, prompt: f"{prompt} x{amount}".encode())
    b.seed_defaults()
    rid = b.submit(5, "mint", "alice", b.estimate_fee())
    b.resolve(rid, b"minted", b"", caller=ORACLE)

    assert b.get_result(MODEL_ID, "mint", amount=5) == b"minted"
    assert b.get_result(MODEL_ID, "mint") == b""
    assert dbmod.get_result(MODEL_ID, b"mint x5") == b"minted"
