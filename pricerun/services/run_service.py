from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from pricerun.core.clock import utc_now
from pricerun.core.errors import InvalidState, RunNotFound, TargetNotFound
from pricerun.core.observability import log_event, logger
from pricerun.core.scope import RequestScope
from pricerun.models.rule_run import RuleRun, RuleTarget, RunStatus, TargetStatus
from pricerun.services.audit_service import log_audit_event
from pricerun.services.channel_connector import ChannelRegistry
from pricerun.services.outbox_service import OutboxMessage, OutboxStore, SqlOutboxStore
from pricerun.services.price_change_service import record_price_change

APPLY_EVENT_TYPE = "job.rules.apply"
RUN_COMPLETED_EVENT_TYPE = "rule_run.completed"

_RETRYABLE_CATEGORIES = {"RATE_LIMIT", "TIMEOUT", "NETWORK", "SERVER_ERROR"}


@dataclass(frozen=True)
class QueueResult:
    run: RuleRun
    emitted: bool
    event_key: str


@dataclass(frozen=True)
class RetryResult:
    run: RuleRun
    retried: int
    emitted: bool
    event_key: str


@dataclass(frozen=True)
class CancelResult:
    run: RuleRun
    cancelled_targets: int


@dataclass(frozen=True)
class RollbackResult:
    run: RuleRun
    rolled_back: int
    failed: int


@dataclass(frozen=True)
class RunStatusSummary:
    run_id: str
    status: str
    total: int
    counts: dict[str, int]
    applied: int
    failed: int
    pending: int
    rolled_back: int
    percent_complete: float
    queued_at: datetime | None
    started_at: datetime | None
    finished_at: datetime | None


@dataclass(frozen=True)
class RunPage:
    items: list[RuleRun]
    next_cursor: str | None


@dataclass(frozen=True)
class FailedTarget:
    target: RuleTarget
    category: str
    retryable: bool


def apply_event_key(run_id: str, generation: int = 0) -> str:
    if generation <= 0:
        return f"job-rules-apply-{run_id}"
    return f"job-rules-apply-{run_id}-retry-{generation}"


def _short_error(message: str) -> str:
    if len(message) <= 255:
        return message
    return f"{message[:252]}..."


def get_run(db: Session, run_id: str, scope: RequestScope | None = None) -> RuleRun:
    stmt = select(RuleRun).where(RuleRun.id == run_id)
    if scope is not None:
        stmt = stmt.where(
            RuleRun.tenant_id == scope.tenant_id,
            RuleRun.project_id == scope.project_id,
        )
    run = db.execute(stmt).scalar_one_or_none()
    if not run:
        raise RunNotFound(run_id)
    return run


def list_targets(db: Session, run_id: str, *, status: str | None = None) -> list[RuleTarget]:
    stmt = select(RuleTarget).where(RuleTarget.rule_run_id == run_id)
    if status:
        stmt = stmt.where(RuleTarget.status == status)
    return db.execute(stmt.order_by(RuleTarget.created_at.asc(), RuleTarget.id.asc())).scalars().all()


def count_targets(db: Session, run_id: str) -> dict[str, int]:
    db.flush()
    rows = db.execute(
        select(RuleTarget.status, func.count(RuleTarget.id))
        .where(RuleTarget.rule_run_id == run_id)
        .group_by(RuleTarget.status)
    ).all()
    counts = {status: 0 for status in TargetStatus.ALL}
    for status, count in rows:
        counts[status] = int(count)
    return counts


def queue_run(
    db: Session,
    *,
    run_id: str,
    scope: RequestScope | None = None,
    store: OutboxStore | None = None,
) -> QueueResult:
    """Move a run to QUEUED and publish its apply job.

    Queuing an already QUEUED run is a no-op. The apply job key is derived from
    the run id and dispatch generation, so republishing never duplicates work.
    """
    run = get_run(db, run_id, scope)
    event_key = apply_event_key(run.id, run.dispatch_generation)
    if run.status == RunStatus.QUEUED:
        return QueueResult(run=run, emitted=False, event_key=event_key)

    if run.status not in (RunStatus.PREVIEW, RunStatus.FAILED, RunStatus.PARTIAL):
        raise InvalidState(f"Run {run.id} cannot be queued from status {run.status}")

    now = utc_now()
    db.execute(
        update(RuleTarget)
        .where(RuleTarget.rule_run_id == run.id, RuleTarget.status == TargetStatus.PREVIEW)
        .values(status=TargetStatus.QUEUED, attempts_at_dispatch=RuleTarget.attempts, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )

    if run.status != RunStatus.PREVIEW:
        queued = db.execute(
            select(func.count(RuleTarget.id)).where(
                RuleTarget.rule_run_id == run.id,
                RuleTarget.status == TargetStatus.QUEUED,
            )
        ).scalar_one()
        if not queued:
            raise InvalidState(f"Run {run.id} has no queued targets; retry failed targets first")

    run.status = RunStatus.QUEUED
    run.queued_at = now
    run.finished_at = None
    run.error_message = None

    store = store or SqlOutboxStore()
    _, emitted = store.publish(
        db,
        OutboxMessage(
            event_key=event_key,
            tenant_id=run.tenant_id,
            project_id=run.project_id,
            event_type=APPLY_EVENT_TYPE,
            payload={"run_id": run.id, "generation": run.dispatch_generation},
            metadata={"rule_id": run.rule_id},
        ),
    )
    log_event(logger, "rule_run.queued", run_id=run.id, event_key=event_key, emitted=emitted)
    return QueueResult(run=run, emitted=emitted, event_key=event_key)


def retry_failed_targets(
    db: Session,
    *,
    run_id: str,
    actor: str,
    target_ids: Sequence[str] | None = None,
    scope: RequestScope | None = None,
    store: OutboxStore | None = None,
) -> RetryResult:
    run = get_run(db, run_id, scope)
    if run.status not in (RunStatus.FAILED, RunStatus.PARTIAL):
        raise InvalidState(f"Only FAILED or PARTIAL runs can be retried, run {run.id} is {run.status}")

    stmt = select(RuleTarget).where(
        RuleTarget.rule_run_id == run.id,
        RuleTarget.status == TargetStatus.FAILED,
    )
    if target_ids is not None:
        requested = set(target_ids)
        known = set(
            db.execute(
                select(RuleTarget.id).where(RuleTarget.rule_run_id == run.id, RuleTarget.id.in_(requested))
            ).scalars()
        )
        missing = sorted(requested - known)
        if missing:
            raise TargetNotFound(missing[0])
        stmt = stmt.where(RuleTarget.id.in_(requested))

    targets = db.execute(stmt).scalars().all()
    if not targets:
        raise InvalidState(f"Run {run.id} has no failed targets to retry")

    for target in targets:
        target.status = TargetStatus.QUEUED
        target.error_message = None
        target.next_attempt_at = None
        target.attempts_at_dispatch = target.attempts

    previous_status = run.status
    run.dispatch_generation += 1
    run.cancel_requested_at = None
    db.flush()

    log_audit_event(
        db,
        tenant_id=run.tenant_id,
        project_id=run.project_id,
        entity="rule_run",
        entity_id=run.id,
        action="rule_run.retry",
        actor=actor,
        explain_json={
            "target_ids": [target.id for target in targets],
            "dispatch_generation": run.dispatch_generation,
            "previous_status": previous_status,
        },
    )

    result = queue_run(db, run_id=run.id, scope=scope, store=store)
    return RetryResult(run=result.run, retried=len(targets), emitted=result.emitted, event_key=result.event_key)


def recompute_run_status(db: Session, run: RuleRun, *, now: datetime | None = None) -> bool:
    """Settle a QUEUED/APPLYING run once no target is pending.

    Returns True when this call moved the run to a terminal status.
    """
    if run.status not in (RunStatus.QUEUED, RunStatus.APPLYING):
        return False

    counts = count_targets(db, run.id)
    pending = sum(counts[status] for status in TargetStatus.PENDING)
    if pending:
        return False

    applied = counts[TargetStatus.APPLIED]
    failed = counts[TargetStatus.FAILED]
    if failed == 0:
        run.status = RunStatus.APPLIED
    elif applied == 0:
        run.status = RunStatus.FAILED
    else:
        run.status = RunStatus.PARTIAL

    if failed and not run.cancel_requested_at:
        run.error_message = f"{failed} of {applied + failed} targets failed"
    run.finished_at = now or utc_now()
    return True


def cancel_run(
    db: Session,
    *,
    run_id: str,
    actor: str,
    reason: str,
    scope: RequestScope | None = None,
) -> CancelResult:
    run = get_run(db, run_id, scope)
    if run.status not in (RunStatus.QUEUED, RunStatus.APPLYING):
        raise InvalidState(f"Only QUEUED or APPLYING runs can be cancelled, run {run.id} is {run.status}")

    now = utc_now()
    message = _short_error(f"Cancelled: {reason}")
    result = db.execute(
        update(RuleTarget)
        .where(
            RuleTarget.rule_run_id == run.id,
            RuleTarget.status.in_([TargetStatus.PREVIEW, TargetStatus.QUEUED]),
        )
        .values(status=TargetStatus.FAILED, error_message=message, next_attempt_at=None, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    cancelled = result.rowcount or 0

    run.cancel_requested_at = now
    run.error_message = message
    recompute_run_status(db, run, now=now)

    log_audit_event(
        db,
        tenant_id=run.tenant_id,
        project_id=run.project_id,
        entity="rule_run",
        entity_id=run.id,
        action="rule_run.cancel",
        actor=actor,
        explain_json={"reason": reason, "cancelled_targets": cancelled, "status": run.status},
    )
    log_event(logger, "rule_run.cancelled", run_id=run.id, cancelled_targets=cancelled, status=run.status)
    return CancelResult(run=run, cancelled_targets=cancelled)


def rollback_run(
    db: Session,
    *,
    run_id: str,
    actor: str,
    channels: ChannelRegistry,
    scope: RequestScope | None = None,
) -> RollbackResult:
    """Push each APPLIED target's before price back to its channel."""
    run = get_run(db, run_id, scope)
    if run.status not in (RunStatus.APPLIED, RunStatus.PARTIAL):
        raise InvalidState(f"Only APPLIED or PARTIAL runs can be rolled back, run {run.id} is {run.status}")

    rolled_back = 0
    failures: list[dict[str, str]] = []
    for target in list_targets(db, run.id, status=TargetStatus.APPLIED):
        before = target.before_json
        try:
            connector = channels.get(target.channel)
            result = connector.update_price(target.external_ref, int(before["amount"]), before["currency"])
            error = None if result.success else (result.error.message if result.error else "Unknown channel error")
        except Exception as exc:  # noqa: BLE001
            error = str(exc) or exc.__class__.__name__

        if error is None:
            target.status = TargetStatus.ROLLED_BACK
            target.error_message = None
            record_price_change(
                db,
                target,
                from_json=target.after_json,
                to_json=before,
                source=f"rollback:{run.id}",
                created_by=actor,
                applied_at=utc_now(),
            )
            rolled_back += 1
        else:
            target.error_message = _short_error(f"Rollback failed: {error}")
            failures.append({"target_id": target.id, "error": error})

    if not failures:
        run.status = RunStatus.ROLLED_BACK
        run.rolled_back_at = utc_now()

    log_audit_event(
        db,
        tenant_id=run.tenant_id,
        project_id=run.project_id,
        entity="rule_run",
        entity_id=run.id,
        action="rule_run.rollback",
        actor=actor,
        explain_json={"rolled_back": rolled_back, "failed": failures, "status": run.status},
    )
    log_event(logger, "rule_run.rollback", run_id=run.id, rolled_back=rolled_back, failed=len(failures))
    return RollbackResult(run=run, rolled_back=rolled_back, failed=len(failures))


def get_run_status(db: Session, *, run_id: str, scope: RequestScope | None = None) -> RunStatusSummary:
    run = get_run(db, run_id, scope)
    counts = count_targets(db, run.id)
    total = sum(counts.values())
    applied = counts[TargetStatus.APPLIED]
    failed = counts[TargetStatus.FAILED]
    pending = sum(counts[status] for status in TargetStatus.PENDING)
    percent_complete = round((applied + failed) / total * 100, 2) if total else 0.0
    return RunStatusSummary(
        run_id=run.id,
        status=run.status,
        total=total,
        counts=counts,
        applied=applied,
        failed=failed,
        pending=pending,
        rolled_back=counts[TargetStatus.ROLLED_BACK],
        percent_complete=percent_complete,
        queued_at=run.queued_at,
        started_at=run.started_at,
        finished_at=run.finished_at,
    )


def list_runs(
    db: Session,
    *,
    scope: RequestScope,
    status: str | None = None,
    rule_id: str | None = None,
    cursor: str | None = None,
    limit: int = 50,
) -> RunPage:
    stmt = select(RuleRun).where(
        RuleRun.tenant_id == scope.tenant_id,
        RuleRun.project_id == scope.project_id,
    )
    if status:
        stmt = stmt.where(RuleRun.status == status)
    if rule_id:
        stmt = stmt.where(RuleRun.rule_id == rule_id)
    if cursor:
        anchor = db.execute(
            select(RuleRun.created_at, RuleRun.id).where(
                RuleRun.id == cursor,
                RuleRun.tenant_id == scope.tenant_id,
                RuleRun.project_id == scope.project_id,
            )
        ).one_or_none()
        if anchor is None:
            raise InvalidState(f"Invalid cursor {cursor}")
        stmt = stmt.where(
            or_(
                RuleRun.created_at < anchor.created_at,
                and_(RuleRun.created_at == anchor.created_at, RuleRun.id < anchor.id),
            )
        )

    rows = db.execute(stmt.order_by(RuleRun.created_at.desc(), RuleRun.id.desc()).limit(limit + 1)).scalars().all()
    items = rows[:limit]
    next_cursor = items[-1].id if len(rows) > limit else None
    return RunPage(items=items, next_cursor=next_cursor)


def classify_error(message: str | None) -> tuple[str, bool]:
    msg = (message or "").lower()
    if "rate limit" in msg or "429" in msg or "throttle" in msg:
        category = "RATE_LIMIT"
    elif "timeout" in msg or "timed out" in msg:
        category = "TIMEOUT"
    elif "not found" in msg or "404" in msg:
        category = "NOT_FOUND"
    elif "unauthorized" in msg or "401" in msg or "403" in msg:
        category = "AUTHORIZATION"
    elif "network" in msg or "connection" in msg or "econnreset" in msg:
        category = "NETWORK"
    elif "validation" in msg or "invalid" in msg:
        category = "VALIDATION"
    elif "500" in msg or "internal server" in msg:
        category = "SERVER_ERROR"
    else:
        category = "UNKNOWN"
    return category, category in _RETRYABLE_CATEGORIES


def list_failed_targets(db: Session, *, run_id: str, scope: RequestScope | None = None) -> list[FailedTarget]:
    run = get_run(db, run_id, scope)
    items = []
    for target in list_targets(db, run.id, status=TargetStatus.FAILED):
        category, retryable = classify_error(target.error_message)
        items.append(FailedTarget(target=target, category=category, retryable=retryable))
    return items
