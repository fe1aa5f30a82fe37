# reserve/db.py
"""
Durable state for the broker: request records (the correlation store), the
result cache, the gas budget policy and the event log.

Functions that take a `db` Session participate in the caller's transaction
(see `session_scope`); the others open and close their own session.
"""
import os
import json
import hashlib
import logging
from contextlib import contextmanager
from typing import Optional, Dict, Any, List, Iterator

from sqlalchemy import create_engine, func, insert, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.exc import IntegrityError

from reserve.errors import RequestIdCollision

log = logging.getLogger("ai-reserve.db")

# Default dev DB; on Vercel api/index.py sets DATABASE_URL to /tmp before import
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./reserve.db")

def _make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)

engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

def reconfigure(url: str):
    """Reconfigure the DB engine and session factory at runtime (for tests)."""
    global engine, SessionLocal
    engine = _make_engine(url)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def init_db():
    # import models lazily so Base metadata has them
    import reserve.models as models  # noqa: F841
    Base.metadata.create_all(bind=engine)

@contextmanager
def session_scope() -> Iterator[Session]:
    """One transaction: commit on success, roll back and re-raise on any error."""
    db: Session = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

def input_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()

# ---------------------------------------------------------------------------
# Correlation store
# ---------------------------------------------------------------------------
def insert_request(db: Session, *, request_id: int, sender: str, model_id: int, input_bytes: bytes,
                   prompt: str, amount: int, payment: int, gas_limit: int, callback_data: bytes):
    """
    Insert a new pending record. An existing row under the same id means the
    oracle reused an id; that is raised as RequestIdCollision, never overwritten.
    """
    from reserve.models import RequestRecord, STATUS_PENDING
    key = str(request_id)
    if db.get(RequestRecord, key) is not None:
        raise RequestIdCollision(request_id)
    rec = RequestRecord(
        request_id=key,
        sender=sender,
        model_id=model_id,
        input=input_bytes,
        output=b"",
        status=STATUS_PENDING,
        prompt=prompt,
        amount=str(amount),
        payment=str(payment),
        gas_limit=gas_limit,
        callback_data=callback_data,
        resolution_count=0,
    )
    db.add(rec)
    try:
        db.flush()
    except IntegrityError as e:
        # lost a race with a concurrent insert of the same id
        raise RequestIdCollision(request_id) from e
    return rec

def load_request(db: Session, request_id: int):
    """Return the RequestRecord bound to `db` (for update), or None."""
    from reserve.models import RequestRecord
    return db.get(RequestRecord, str(request_id))

def get_request(request_id: int) -> Optional[Dict[str, Any]]:
    """Return the stored record as a dict or None."""
    db: Session = SessionLocal()
    try:
        rec = load_request(db, request_id)
        return rec.to_dict() if rec is not None else None
    finally:
        db.close()

def count_pending() -> int:
    from reserve.models import RequestRecord, STATUS_PENDING
    db: Session = SessionLocal()
    try:
        return db.query(func.count(RequestRecord.request_id)).filter(
            RequestRecord.status == STATUS_PENDING
        ).scalar() or 0
    finally:
        db.close()

def mark_resolved(db: Session, request_id: int, output: bytes, *, only_pending: bool) -> int:
    """
    Move a record to resolved in one UPDATE. With `only_pending` the row is only
    touched while still pending. Returns the number of rows changed (0 or 1).
    """
    from reserve.models import RequestRecord, STATUS_PENDING, STATUS_RESOLVED, utcnow
    stmt = update(RequestRecord).where(RequestRecord.request_id == str(request_id))
    if only_pending:
        stmt = stmt.where(RequestRecord.status == STATUS_PENDING)
    stmt = stmt.values(
        output=output,
        status=STATUS_RESOLVED,
        resolved_at=utcnow(),
        resolution_count=func.coalesce(RequestRecord.resolution_count, 0) + 1,
    ).execution_options(synchronize_session=False)
    return db.execute(stmt).rowcount

# ---------------------------------------------------------------------------
# Result cache
# ---------------------------------------------------------------------------
_UPSERT_INSERTS = {"sqlite": sqlite_insert, "postgresql": pg_insert}

def put_result(db: Session, *, model_id: int, input_bytes: bytes, output: bytes, request_id: int):
    """Overwrite the cached output for (model_id, input_bytes) with a single upsert."""
    from reserve.models import ResultCacheEntry, utcnow
    values = {
        "model_id": model_id,
        "input_hash": input_digest(input_bytes),
        "input": input_bytes,
        "output": output,
        "request_id": str(request_id),
        "updated_at": utcnow(),
    }
    dialect = db.get_bind().dialect.name
    insert_fn = _UPSERT_INSERTS.get(dialect)
    if insert_fn is not None:
        stmt = insert_fn(ResultCacheEntry).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["model_id", "input_hash"],
            set_={
                "output": stmt.excluded.output,
                "request_id": stmt.excluded.request_id,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        db.execute(stmt)
        return

    # no native upsert: update, else insert; a concurrent insert turns into an update
    changes = {k: values[k] for k in ("output", "request_id", "updated_at")}
    key = (ResultCacheEntry.model_id == model_id, ResultCacheEntry.input_hash == values["input_hash"])
    if db.execute(update(ResultCacheEntry).where(*key).values(**changes)).rowcount:
        return
    try:
        with db.begin_nested():
            db.execute(insert(ResultCacheEntry).values(**values))
    except IntegrityError:
        db.execute(update(ResultCacheEntry).where(*key).values(**changes))

def get_result(model_id: int, input_bytes: bytes) -> bytes:
    """Cached output for (model_id, input_bytes); b"" when nothing was ever resolved for it."""
    from reserve.models import ResultCacheEntry
    db: Session = SessionLocal()
    try:
        entry = db.query(ResultCacheEntry).filter(
            ResultCacheEntry.model_id == model_id,
            ResultCacheEntry.input_hash == input_digest(input_bytes),
        ).first()
        return bytes(entry.output) if entry is not None else b""
    finally:
        db.close()

# ---------------------------------------------------------------------------
# Gas budget policy
# ---------------------------------------------------------------------------
def get_gas_budget(model_id: int) -> Optional[int]:
    from reserve.models import GasBudget
    db: Session = SessionLocal()
    try:
        row = db.get(GasBudget, model_id)
        return int(row.gas_limit) if row is not None else None
    finally:
        db.close()

def set_gas_budget(model_id: int, gas_limit: int) -> None:
    from reserve.models import GasBudget
    with session_scope() as db:
        row = db.get(GasBudget, model_id)
        if row is None:
            db.add(GasBudget(model_id=model_id, gas_limit=gas_limit))
        else:
            row.gas_limit = gas_limit

def list_gas_budgets() -> Dict[int, int]:
    from reserve.models import GasBudget
    db: Session = SessionLocal()
    try:
        return {row.model_id: int(row.gas_limit) for row in db.query(GasBudget).order_by(GasBudget.model_id)}
    finally:
        db.close()

def seed_gas_budgets(defaults: Dict[int, int]) -> int:
    """Insert defaults for models that have no budget yet. Existing rows are left alone."""
    from reserve.models import GasBudget
    inserted = 0
    with session_scope() as db:
        for model_id, gas_limit in defaults.items():
            if db.get(GasBudget, model_id) is None:
                db.add(GasBudget(model_id=model_id, gas_limit=gas_limit))
                inserted += 1
    if inserted:
        log.info("Seeded default gas budgets", extra={"count": inserted})
    return inserted

# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------
def append_event(db: Session, name: str, request_id: int, payload: Dict[str, Any]):
    from reserve.models import BrokerEvent
    ev = BrokerEvent(name=name, request_id=str(request_id), payload_json=json.dumps(payload, sort_keys=True))
    db.add(ev)
    db.flush()
    return ev

def list_events(after_id: int = 0, limit: int = 100, request_id: Optional[int] = None) -> List[Dict[str, Any]]:
    from reserve.models import BrokerEvent
    db: Session = SessionLocal()
    try:
        q = db.query(BrokerEvent).filter(BrokerEvent.id > after_id)
        if request_id is not None:
            q = q.filter(BrokerEvent.request_id == str(request_id))
        rows = q.order_by(BrokerEvent.id).limit(limit).all()
        return [
            {
                "id": ev.id,
                "name": ev.name,
                "request_id": ev.request_id,
                "payload": json.loads(ev.payload_json),
                "timestamp": ev.timestamp.isoformat() + "Z" if ev.timestamp else None,
            }
            for ev in rows
        ]
    finally:
        db.close()
