"""
Audit trail for denied entitlement checks.

Every refused feature gate or capacity reservation produces an
AccessDenialEvent. EntitlementAuditLogger writes it as a structured WARNING
on the ``edpsych.entitlements.audit`` logger, so log shipping can route it
separately from application logs, and can also store it as a
``entitlement.access_denied`` row in billing_events.

A denial that repeats for the same owner and feature within the configured
window is reported once; ``log_denial`` returns False for the suppressed
copies.
"""

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

# Same name as the audit channel.
logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class AccessDenialEvent:
    owner_id: str
    feature_name: str
    reason: str
    tier: Optional[str] = None
    status: Optional[str] = None
    required_tier: Optional[str] = None
    # capacity denials only
    current: Optional[int] = None
    limit: Optional[Any] = None
    # request context, when the check came through HTTP
    user_id: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    request_id: Optional[str] = None
    extra_metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now_iso)
    event_id: str = field(default_factory=_new_id)

    @property
    def dedupe_key(self) -> str:
        return f"{self.owner_id}:{self.feature_name}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EntitlementAuditLogger:
    """
    Shared sink for AccessDenialEvents.

    The application builds one at startup (see ``create_app``) and stores it
    on ``app.state``; services receive it through FastAPI dependencies.
    ``db_session_factory`` enables persistence, and a failed insert is logged
    without affecting the denial itself.
    """

    def __init__(
        self,
        db_session_factory: Optional[Callable[[], Session]] = None,
        aggregation_window_seconds: int = 0,
    ):
        self._session_factory = db_session_factory
        self._window = max(0, aggregation_window_seconds)
        self._last_seen: Dict[str, float] = {}
        self._lock = Lock()

    def log_denial(self, event: AccessDenialEvent) -> bool:
        if self._window and self._suppressed(event.dedupe_key):
            return False

        logger.warning(
            "access_denied",
            extra={"event_type": "access_denied", "audit_data": event.to_dict()},
        )
        if self._session_factory is not None:
            self._store(event)
        return True

    def _suppressed(self, key: str) -> bool:
        now = time.monotonic()
        with self._lock:
            seen_at = self._last_seen.get(key)
            if seen_at is not None and now - seen_at < self._window:
                return True
            self._last_seen[key] = now
            # prune expired keys
            expired = [k for k, t in self._last_seen.items() if now - t >= self._window]
            for k in expired:
                del self._last_seen[k]
            return False

    def _store(self, event: AccessDenialEvent) -> None:
        from edpsych.models.billing_event import BillingEvent, BillingEventType

        session = self._session_factory()
        try:
            session.add(BillingEvent(
                id=event.event_id,
                owner_id=event.owner_id,
                event_type=BillingEventType.ACCESS_DENIED,
                description=f"{event.feature_name} denied: {event.reason}",
                extra_metadata=event.to_dict(),
            ))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(
                "Failed to write audit event to database",
                extra={"owner_id": event.owner_id, "event_id": event.event_id, "error": str(e)},
            )
        finally:
            session.close()
