# tests/test_api_endpoints.py
"""
End-to-end flows through the HTTP API with MOCK_AUTH (principal taken from
the x-principal header) and the in-process mock oracle.
"""
import pytest
from fastapi.testclient import TestClient

from reserve.app import app
from reserve import app as app_module
import reserve.oracle_client as oracle
from reserve import auth as authmod

broker = app_module.broker  # the single instance created in reserve.app
ORACLE_HDR = {"x-principal": broker.settings.oracle_address}
ADMIN_HDR = {"x-principal": broker.settings.admin_address}
ALICE_HDR = {"x-principal": "alice"}


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture(autouse=True)
def mock_auth_and_budgets(monkeypatch):
    monkeypatch.setattr(authmod, "MOCK_AUTH", True)
    broker.seed_defaults()
    yield


def _submit(client, prompt="Hello World", headers=ALICE_HDR):
    fee = client.get("/api/fee", headers=headers).json()["fee"]
    r = client.post("/api/requests", headers=headers, json={"amount": 0, "prompt": prompt, "payment": fee})
    assert r.status_code == 200, r.text
    return r.json()["request_id"]


def test_fee_endpoint(client):
    r = client.get("/api/fee", headers=ALICE_HDR)
    assert r.status_code == 200
    j = r.json()
    assert j["model_id"] == broker.model_id
    assert int(j["fee"]) == broker.estimate_fee()
    assert j["gas_limit"] == broker.list_gas_budgets()[broker.model_id]

    r = client.get("/api/fee", params={"model_id": 11, "gas_limit": 10}, headers=ALICE_HDR)
    assert int(r.json()["fee"]) == oracle.mock_oracle.fee(11, 10)
    assert r.json()["gas_limit"] == 10


def test_fee_reports_updated_budget(client):
    r = client.put("/api/admin/gas-budgets/11", headers=ADMIN_HDR, json={"gas_limit": 1_234_567})
    assert r.status_code == 200, r.text
    j = client.get("/api/fee", headers=ALICE_HDR).json()
    assert j["gas_limit"] == 1_234_567
    assert int(j["fee"]) == oracle.mock_oracle.fee(11, 1_234_567)


def test_submit_callback_and_lookup(client):
    rid = _submit(client)

    rec = client.get(f"/api/requests/{rid}", headers=ALICE_HDR).json()["record"]
    assert rec["status"] == "pending"
    assert rec["sender"] == "alice"

    r = client.post("/api/callback", headers=ORACLE_HDR,
                    json={"request_id": rid, "output": "0x" + b"42".hex(), "callback_data": "0x"})
    assert r.status_code == 200
    assert r.json()["record"]["status"] == "resolved"

    r = client.get("/api/results", params={"model_id": 11, "prompt": "Hello World"}, headers=ALICE_HDR)
    assert r.json()["output"] == "0x3432"
    assert r.json()["output_text"] == "42"


def test_forged_callback_is_401_and_state_untouched(client):
    rid = _submit(client)
    r = client.post("/api/callback", headers=ALICE_HDR,
                    json={"request_id": rid, "output": "0x3432"})
    assert r.status_code == 401
    j = r.json()
    assert j["error_code"] == "E_UNAUTHORIZED"
    assert j["details"]["actual"] == "alice"
    assert j["details"]["retryable"] is False

    r = client.get("/api/results", params={"model_id": 11, "prompt": "Hello World"}, headers=ALICE_HDR)
    assert r.json()["output"] == "0x"


def test_admin_cannot_deliver_callbacks(client):
    rid = _submit(client)
    r = client.post("/api/callback", headers=ADMIN_HDR, json={"request_id": rid, "output": "0x00"})
    assert r.status_code == 401


def test_callback_for_unknown_request_is_404(client):
    r = client.post("/api/callback", headers=ORACLE_HDR, json={"request_id": 999, "output": "0x00"})
    assert r.status_code == 404
    assert r.json()["error_code"] == "E_UNKNOWN_REQUEST"
    assert r.json()["request_id"] == "999"


def test_callback_rejects_bad_hex(client):
    rid = _submit(client)
    r = client.post("/api/callback", headers=ORACLE_HDR, json={"request_id": rid, "output": "not-hex"})
    assert r.status_code == 422


def test_underpaid_submission_is_502_and_not_recorded(client):
    r = client.post("/api/requests", headers=ALICE_HDR, json={"prompt": "Hello World", "payment": "1"})
    assert r.status_code == 502
    j = r.json()
    assert j["error_code"] == "E_REGISTRATION_FAILED"
    assert j["details"]["retryable"] is True
    assert client.get("/api/events", headers=ALICE_HDR).json()["events"] == []


def test_large_payment_as_decimal_string(client):
    r = client.post("/api/requests", headers=ALICE_HDR,
                    json={"prompt": "Hello World", "payment": str(10 ** 30)})
    assert r.status_code == 200
    rid = r.json()["request_id"]
    assert oracle.mock_oracle.registrations[-1]["payment"] == 10 ** 30
    assert client.get(f"/api/requests/{rid}", headers=ALICE_HDR).json()["record"]["payment"] == str(10 ** 30)


def test_negative_payment_is_422(client):
    r = client.post("/api/requests", headers=ALICE_HDR, json={"prompt": "x", "payment": -1})
    assert r.status_code == 422


def test_gas_budget_admin_endpoints(client):
    r = client.put("/api/admin/gas-budgets/11", headers=ALICE_HDR, json={"gas_limit": 1})
    assert r.status_code == 403
    assert r.json()["error_code"] == "E_FORBIDDEN"

    r = client.put("/api/admin/gas-budgets/11", headers=ADMIN_HDR, json={"gas_limit": 1_000_000})
    assert r.status_code == 200

    r = client.get("/api/admin/gas-budgets", headers=ALICE_HDR)
    assert r.json()["gas_budgets"]["11"] == 1_000_000


def test_missing_budget_is_409(client):
    r = client.get("/api/fee", params={"model_id": 77}, headers=ALICE_HDR)
    assert r.status_code == 409
    assert r.json()["error_code"] == "E_CONFIG_MISSING"


def test_events_endpoint(client):
    rid = _submit(client)
    client.post("/api/callback", headers=ORACLE_HDR, json={"request_id": rid, "output": "0x3432"})

    events = client.get("/api/events", headers=ALICE_HDR).json()["events"]
    assert [e["name"] for e in events] == ["RequestSubmitted", "RequestResolved"]

    after = client.get("/api/events", params={"after": events[0]["id"]}, headers=ALICE_HDR).json()["events"]
    assert [e["name"] for e in after] == ["RequestResolved"]


def test_history_not_found(client):
    r = client.get("/api/requests/424242", headers=ALICE_HDR)
    assert r.status_code == 404
    assert r.json()["error_code"] == "E_NOT_FOUND"
