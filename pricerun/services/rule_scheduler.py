"""One-shot scheduling of pricing rules.

A rule with ``schedule_at`` in the past is materialized and queued by the
worker's scheduler pass, then ``schedule_at`` is cleared. The run remembers the
slot it was created for in ``scheduled_for`` so a second pass over the same
slot does not queue the rule twice.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from pricerun.core.clock import as_utc
from pricerun.core.errors import RuleDisabled
from pricerun.core.observability import log_event, worker_logger
from pricerun.models.pricing_rule import PricingRule
from pricerun.models.rule_run import RuleRun, RunStatus
from pricerun.services.audit_service import log_audit_event
from pricerun.services.catalog_service import get_rule
from pricerun.services.materializer import materialize
from pricerun.services.outbox_service import OutboxMessage, OutboxStore, SqlOutboxStore
from pricerun.services.run_service import queue_run

SCHEDULED_EVENT_TYPE = "rule.scheduled.queued"

_ACTIVE_RUN_STATUSES = (RunStatus.QUEUED, RunStatus.APPLYING, RunStatus.APPLIED)


@dataclass(frozen=True)
class ScheduleResult:
    rule_id: str
    run_id: str | None
    status: str
    detail: str | None = None


def due_rule_ids(db: Session, *, now: datetime, limit: int = 50) -> list[str]:
    return db.execute(
        select(PricingRule.id)
        .where(
            PricingRule.enabled.is_(True),
            PricingRule.schedule_at.is_not(None),
            PricingRule.schedule_at <= now,
        )
        .order_by(PricingRule.schedule_at.asc(), PricingRule.id.asc())
        .limit(limit)
    ).scalars().all()


def _existing_run(db: Session, rule: PricingRule, scheduled_for: datetime) -> RuleRun | None:
    return db.execute(
        select(RuleRun)
        .where(
            RuleRun.rule_id == rule.id,
            RuleRun.scheduled_for == scheduled_for,
            RuleRun.status.in_(_ACTIVE_RUN_STATUSES),
        )
        .limit(1)
    ).scalar_one_or_none()


def schedule_rule(
    db: Session,
    *,
    rule_id: str,
    now: datetime,
    actor: str = "scheduler",
    store: OutboxStore | None = None,
) -> ScheduleResult:
    """Materialize and queue one due rule. The caller commits."""
    rule = get_rule(db, rule_id)
    if rule.schedule_at is None or as_utc(rule.schedule_at) > now:
        return ScheduleResult(rule_id=rule.id, run_id=None, status="not_due")
    if not rule.enabled:
        raise RuleDisabled(rule.id)

    scheduled_for = rule.schedule_at
    existing = _existing_run(db, rule, scheduled_for)
    if existing is not None:
        rule.schedule_at = None
        log_event(worker_logger, "scheduler.skipped", rule_id=rule.id, run_id=existing.id, status=existing.status)
        return ScheduleResult(
            rule_id=rule.id,
            run_id=existing.id,
            status="skipped",
            detail=f"Run {existing.id} already {existing.status}",
        )

    run = materialize(db, rule_id=rule.id, actor=actor)
    run.scheduled_for = scheduled_for
    run.explain_json = {
        **(run.explain_json or {}),
        "scheduled_by": actor,
        "scheduled_at": now.isoformat(),
    }

    store = store or SqlOutboxStore()
    queue_run(db, run_id=run.id, store=store)
    rule.schedule_at = None

    log_audit_event(
        db,
        tenant_id=rule.tenant_id,
        project_id=rule.project_id,
        entity="rule_run",
        entity_id=run.id,
        action="rule_run.schedule",
        actor=actor,
        explain_json={"rule_id": rule.id, "scheduled_for": as_utc(scheduled_for).isoformat()},
    )
    store.publish(
        db,
        OutboxMessage(
            event_key=f"rule-scheduled-{rule.id}-{run.id}",
            tenant_id=rule.tenant_id,
            project_id=rule.project_id,
            event_type=SCHEDULED_EVENT_TYPE,
            payload={"rule_id": rule.id, "run_id": run.id, "scheduled_for": as_utc(scheduled_for).isoformat()},
        ),
    )
    log_event(worker_logger, "scheduler.queued", rule_id=rule.id, run_id=run.id)
    return ScheduleResult(rule_id=rule.id, run_id=run.id, status="queued")
