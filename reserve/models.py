# reserve/models.py
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Text, LargeBinary, UniqueConstraint
import datetime

from reserve.db import Base

STATUS_PENDING = "pending"
STATUS_RESOLVED = "resolved"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def _hex(b) -> str:
    return "0x" + bytes(b or b"").hex()


class RequestRecord(Base):
    """One row per request id handed out by the oracle. Never deleted."""

    __tablename__ = "request_records"

    # uint256-sized ids, stored as decimal text
    request_id = Column(String(80), primary_key=True)
    sender = Column(String(256), nullable=False)
    model_id = Column(Integer, nullable=False, index=True)
    input = Column(LargeBinary, nullable=False)
    output = Column(LargeBinary, nullable=False, default=b"")
    status = Column(String(16), nullable=False, default=STATUS_PENDING, index=True)
    prompt = Column(Text, nullable=True)
    amount = Column(String(80), nullable=False, default="0")
    payment = Column(String(80), nullable=False, default="0")
    gas_limit = Column(BigInteger, nullable=False)
    callback_data = Column(LargeBinary, nullable=False, default=b"")
    resolution_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    def to_dict(self):
        return {
            "request_id": self.request_id,
            "sender": self.sender,
            "model_id": self.model_id,
            "input": _hex(self.input),
            "output": _hex(self.output),
            "status": self.status,
            "prompt": self.prompt,
            "amount": self.amount,
            "payment": self.payment,
            "gas_limit": self.gas_limit,
            "callback_data": _hex(self.callback_data),
            "resolution_count": self.resolution_count,
            "created_at": self.created_at.isoformat() + "Z" if self.created_at else None,
            "resolved_at": self.resolved_at.isoformat() + "Z" if self.resolved_at else None,
        }


class ResultCacheEntry(Base):
    """Last output delivered for a (model, input) pair."""

    __tablename__ = "result_cache"
    __table_args__ = (UniqueConstraint("model_id", "input_hash", name="uq_result_cache_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    model_id = Column(Integer, nullable=False)
    input_hash = Column(String(64), nullable=False)
    input = Column(LargeBinary, nullable=False)
    output = Column(LargeBinary, nullable=False, default=b"")
    request_id = Column(String(80), nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class GasBudget(Base):
    __tablename__ = "gas_budgets"

    model_id = Column(Integer, primary_key=True, autoincrement=False)
    gas_limit = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class BrokerEvent(Base):
    """Append-only log of submission/resolution events for off-band tracking."""

    __tablename__ = "broker_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), nullable=False, index=True)
    request_id = Column(String(80), nullable=False, index=True)
    payload_json = Column(Text, nullable=False)
    timestamp = Column(DateTime, default=utcnow)
