# rewards/audit.py
"""
Side-channel activity observer.

Services call ``observer.notify(...)`` after a state transition has committed.
Handlers log and persist an AuditLog row; a failing handler is logged and
ignored, it never changes the outcome of the operation that emitted the event.
"""
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List

from extensions import db
from models import AuditLog

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"


class Events:
    USER_REGISTERED = "user.registered"
    ACTIVATION_REQUESTED = "activation.requested"
    ACTIVATION_COMPLETED = "activation.completed"
    ACTIVATION_REJECTED = "activation.rejected"
    COMMISSIONS_DISTRIBUTED = "commissions.distributed"
    REFERRALS_UPDATED = "referrals.updated"
    POOL_CLAIMED = "pool.claimed"
    PAYOUT_QUEUED = "payout.queued"
    PAYOUT_CLAIMED = "payout.claimed"
    WITHDRAWAL_REQUESTED = "withdrawal.requested"
    WITHDRAWAL_APPROVED = "withdrawal.approved"
    WITHDRAWAL_REJECTED = "withdrawal.rejected"
    DEPOSIT_REQUESTED = "deposit.requested"
    DEPOSIT_APPROVED = "deposit.approved"
    DEPOSIT_REJECTED = "deposit.rejected"
    FUNDS_TRANSFERRED = "funds.transferred"
    USER_STATUS_CHANGED = "user.status_changed"


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value


class ActivityObserver:

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}

    def subscribe(self, event_name: str, handler: Callable):
        self._handlers.setdefault(event_name, []).append(handler)

    def unsubscribe(self, event_name: str, handler: Callable):
        if handler in self._handlers.get(event_name, []):
            self._handlers[event_name].remove(handler)

    def notify(self, event_name: str, **payload: Any):
        handlers = self._handlers.get(event_name, []) + self._handlers.get(ALL_EVENTS, [])
        data = _jsonable(payload)
        for handler in handlers:
            try:
                handler(event_name, data)
            except Exception as e:
                logger.error(f"Activity handler {getattr(handler, '__name__', handler)} failed for {event_name}: {e}")


def log_activity(event_name: str, data: Dict[str, Any]):
    logger.info(f"[{event_name}] {data}")


def persist_activity(event_name: str, data: Dict[str, Any]):
    """Writes through its own connection; the caller's session is left untouched."""
    with db.engine.begin() as connection:
        connection.execute(AuditLog.__table__.insert().values(
            actor_id=data.get("actor_id") or data.get("user_id"),
            action=event_name,
            entity_type=data.get("entity_type"),
            entity_id=data.get("entity_id"),
            details=data,
        ))


observer = ActivityObserver()
observer.subscribe(ALL_EVENTS, log_activity)
observer.subscribe(ALL_EVENTS, persist_activity)
