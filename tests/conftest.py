# tests/conftest.py
"""
Shared fixtures: every test gets its own disposable SQLite DB and a fresh
in-process mock oracle.
"""
import pytest

from reserve import db as dbmod
import reserve.oracle_client as oracle
from reserve.broker import RequestBroker
from reserve.config import BrokerSettings

ORACLE = "oracle-endpoint"
ADMIN = "reserve-admin"
MODEL_ID = 11


@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    dbmod.reconfigure(f"sqlite:///{tmp_path / 'reserve_test.db'}")
    dbmod.init_db()
    monkeypatch.setattr(oracle, "MOCK_ORACLE", True)
    oracle.mock_oracle.reset()
    yield
    dbmod.engine.dispose()


@pytest.fixture
def settings():
    return BrokerSettings(
        model_id=MODEL_ID,
        broker_address="reserve-under-test",
        oracle_address=ORACLE,
        admin_address=ADMIN,
        default_gas_budgets={MODEL_ID: 5_000_000},
    )


@pytest.fixture
def broker(settings):
    b = RequestBroker(settings)
    b.seed_defaults()
    return b


@pytest.fixture
def submit(broker):
    """Submit a prompt paying exactly the current fee; returns the request id."""
    def _submit(prompt="Hello World", sender="alice", amount=0):
        return broker.submit(amount, prompt, sender, broker.estimate_fee())
    return _submit
