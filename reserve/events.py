# reserve/events.py
"""
Submission/resolution events.

An event is written to the `broker_events` table inside the same transaction
as the state change it describes, then published to in-process subscribers
once that transaction has committed. Off-band trackers read the table through
GET /api/events.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from reserve import db as dbmod

REQUEST_SUBMITTED = "RequestSubmitted"
REQUEST_RESOLVED = "RequestResolved"

log = logging.getLogger("ai-reserve.events")

Subscriber = Callable[[Dict[str, Any]], None]


def _encode(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value


class EventLog:
    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, fn: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(fn)

    def unsubscribe(self, fn: Subscriber) -> None:
        with self._lock:
            if fn in self._subscribers:
                self._subscribers.remove(fn)

    def record(self, db: Session, name: str, request_id: int, **fields: Any) -> Dict[str, Any]:
        payload = {k: _encode(v) for k, v in fields.items()}
        ev = dbmod.append_event(db, name, request_id, payload)
        return {"id": ev.id, "name": name, "request_id": str(request_id), "payload": payload}

    def publish(self, event: Dict[str, Any]) -> None:
        log.info(event["name"], extra={"request_id": event["request_id"], "event_id": event["id"]})
        with self._lock:
            subscribers = list(self._subscribers)
        for fn in subscribers:
            try:
                fn(event)
            except Exception:
                # the state change is already committed; report and carry on
                log.exception("Event subscriber failed", extra={"event": event["name"]})

    def list(self, after_id: int = 0, limit: int = 100, request_id: Optional[int] = None) -> List[Dict[str, Any]]:
        return dbmod.list_events(after_id=after_id, limit=limit, request_id=request_id)
