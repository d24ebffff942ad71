"""Transactional outbox.

Events are written to ``event_log`` (append-only, unique ``event_key``) and
mirrored into ``outbox_events`` in the caller's transaction. Workers claim
outbox rows with a lease and report back through ``complete``, ``defer`` or
``fail``. Nothing here commits; the caller owns the transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from pricerun.core.clock import utc_now
from pricerun.core.config import settings
from pricerun.core.id_utils import generate_shortuuid
from pricerun.models.outbox import EventLog, OutboxDeliveryAttempt, OutboxEvent

PENDING = "pending"
PROCESSING = "processing"
DELIVERED = "delivered"
DEAD_LETTER = "dead_letter"

_CLAIM_RETRIES = 3


@dataclass(frozen=True)
class OutboxMessage:
    event_key: str
    tenant_id: str
    event_type: str
    payload: dict[str, Any]
    project_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    available_at: datetime | None = None


class OutboxStore(Protocol):
    def publish(self, db: Session, message: OutboxMessage) -> tuple[EventLog, bool]:
        ...

    def claim_next(
        self,
        db: Session,
        *,
        worker_id: str,
        event_types: Sequence[str] | None = None,
        now: datetime | None = None,
        tenant_id: str | None = None,
    ) -> OutboxEvent | None:
        ...

    def complete(self, db: Session, event: OutboxEvent, *, worker_id: str, detail: str | None = None) -> None:
        ...

    def defer(
        self,
        db: Session,
        event: OutboxEvent,
        *,
        until: datetime,
        worker_id: str,
        detail: str | None = None,
    ) -> None:
        ...

    def fail(self, db: Session, event: OutboxEvent, *, error: str, worker_id: str) -> str:
        ...


def _short_error(message: str) -> str:
    if len(message) <= 255:
        return message
    return f"{message[:252]}..."


class SqlOutboxStore:
    def __init__(
        self,
        *,
        max_attempts: int | None = None,
        retry_seconds: int | None = None,
        retry_max_seconds: int | None = None,
        lease_seconds: int | None = None,
    ):
        self.max_attempts = max_attempts or settings.outbox_max_attempts
        self.retry_seconds = retry_seconds or settings.outbox_retry_seconds
        self.retry_max_seconds = retry_max_seconds or settings.outbox_retry_max_seconds
        self.lease_seconds = lease_seconds or settings.outbox_lease_seconds

    def publish(self, db: Session, message: OutboxMessage) -> tuple[EventLog, bool]:
        event_log_id = generate_shortuuid()
        created = self._insert_event_log(
            db,
            {
                "id": event_log_id,
                "event_key": message.event_key,
                "tenant_id": message.tenant_id,
                "project_id": message.project_id,
                "event_type": message.event_type,
                "payload_json": message.payload,
                "metadata_json": message.metadata or None,
                "created_at": utc_now(),
            },
        )
        if created:
            db.add(
                OutboxEvent(
                    id=generate_shortuuid(),
                    event_log_id=event_log_id,
                    tenant_id=message.tenant_id,
                    event_type=message.event_type,
                    payload_json=message.payload,
                    status=PENDING,
                    attempt_count=0,
                    max_attempts=self.max_attempts,
                    next_attempt_at=message.available_at or utc_now(),
                )
            )
        event_log = db.execute(select(EventLog).where(EventLog.event_key == message.event_key)).scalar_one()
        return event_log, created

    def _insert_event_log(self, db: Session, values: dict[str, Any]) -> bool:
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql_insert(EventLog).values(**values).on_conflict_do_nothing(index_elements=["event_key"])
        elif dialect == "sqlite":
            stmt = sqlite_insert(EventLog).values(**values).on_conflict_do_nothing(index_elements=["event_key"])
        else:
            existing = db.execute(
                select(EventLog.id).where(EventLog.event_key == values["event_key"])
            ).scalar_one_or_none()
            if existing is not None:
                return False
            db.add(EventLog(**values))
            db.flush()
            return True
        return db.execute(stmt).rowcount == 1

    def _claimable(self, now: datetime):
        return or_(
            and_(OutboxEvent.status == PENDING, OutboxEvent.next_attempt_at <= now),
            and_(OutboxEvent.status == PROCESSING, OutboxEvent.locked_until < now),
        )

    def claim_next(
        self,
        db: Session,
        *,
        worker_id: str,
        event_types: Sequence[str] | None = None,
        now: datetime | None = None,
        tenant_id: str | None = None,
    ) -> OutboxEvent | None:
        now = now or utc_now()
        supports_skip_locked = db.get_bind().dialect.name == "postgresql"

        for _ in range(_CLAIM_RETRIES):
            stmt = select(OutboxEvent.id).where(self._claimable(now))
            if event_types:
                stmt = stmt.where(OutboxEvent.event_type.in_(list(event_types)))
            if tenant_id:
                stmt = stmt.where(OutboxEvent.tenant_id == tenant_id)
            stmt = stmt.order_by(OutboxEvent.next_attempt_at.asc(), OutboxEvent.created_at.asc()).limit(1)
            if supports_skip_locked:
                stmt = stmt.with_for_update(skip_locked=True)

            candidate_id = db.execute(stmt).scalar_one_or_none()
            if candidate_id is None:
                return None

            result = db.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == candidate_id, self._claimable(now))
                .values(
                    status=PROCESSING,
                    locked_by=worker_id,
                    locked_until=now + timedelta(seconds=self.lease_seconds),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return db.get(OutboxEvent, candidate_id, populate_existing=True)
        return None

    def _record_attempt(self, db: Session, event: OutboxEvent, *, status: str, worker_id: str, detail: str | None):
        previous = db.execute(
            select(func.count(OutboxDeliveryAttempt.id)).where(OutboxDeliveryAttempt.outbox_event_id == event.id)
        ).scalar_one()
        db.add(
            OutboxDeliveryAttempt(
                id=generate_shortuuid(),
                outbox_event_id=event.id,
                attempt_number=previous + 1,
                status=status,
                worker_id=worker_id,
                detail=detail[:500] if detail else None,
            )
        )

    def complete(self, db: Session, event: OutboxEvent, *, worker_id: str, detail: str | None = None) -> None:
        event.status = DELIVERED
        event.processed_at = utc_now()
        event.locked_by = None
        event.locked_until = None
        event.last_error = None
        self._record_attempt(db, event, status=DELIVERED, worker_id=worker_id, detail=detail)

    def defer(
        self,
        db: Session,
        event: OutboxEvent,
        *,
        until: datetime,
        worker_id: str,
        detail: str | None = None,
    ) -> None:
        event.status = PENDING
        event.next_attempt_at = until
        event.locked_by = None
        event.locked_until = None
        self._record_attempt(db, event, status="deferred", worker_id=worker_id, detail=detail)

    def retry_delay_seconds(self, attempt_count: int) -> int:
        delay = self.retry_seconds * (2 ** max(attempt_count - 1, 0))
        return min(delay, self.retry_max_seconds)

    def fail(self, db: Session, event: OutboxEvent, *, error: str, worker_id: str) -> str:
        event.attempt_count += 1
        event.last_error = _short_error(error)
        event.locked_by = None
        event.locked_until = None
        if event.attempt_count >= event.max_attempts:
            event.status = DEAD_LETTER
        else:
            event.status = PENDING
            event.next_attempt_at = utc_now() + timedelta(seconds=self.retry_delay_seconds(event.attempt_count))
        status = DEAD_LETTER if event.status == DEAD_LETTER else "failed"
        self._record_attempt(db, event, status=status, worker_id=worker_id, detail=error)
        return status


def get_event_log(db: Session, event_key: str) -> EventLog | None:
    return db.execute(select(EventLog).where(EventLog.event_key == event_key)).scalar_one_or_none()


def get_outbox_event(db: Session, event_key: str) -> OutboxEvent | None:
    return db.execute(
        select(OutboxEvent).join(EventLog, EventLog.id == OutboxEvent.event_log_id).where(EventLog.event_key == event_key)
    ).scalar_one_or_none()
