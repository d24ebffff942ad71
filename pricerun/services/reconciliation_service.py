from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from pricerun.core.clock import utc_now
from pricerun.core.config import settings
from pricerun.core.errors import InvalidState
from pricerun.core.money import format_minor_units
from pricerun.core.observability import log_event, logger
from pricerun.core.scope import RequestScope
from pricerun.models.rule_run import RunStatus, TargetStatus
from pricerun.services.audit_service import list_audit_events, log_audit_event
from pricerun.services.channel_connector import ChannelRegistry
from pricerun.services.outbox_service import OutboxMessage, OutboxStore, SqlOutboxStore
from pricerun.services.run_service import get_run, list_targets

RECONCILIATION_EVENT_TYPE = "automation.reconciliation.completed"


@dataclass(frozen=True)
class PriceMismatch:
    target_id: str
    sku_id: str
    expected_amount: int
    expected_currency: str
    actual_amount: int
    actual_currency: str
    difference: int
    percentage_difference: float


@dataclass(frozen=True)
class ReconcileError:
    target_id: str
    sku_id: str
    error: str


@dataclass
class ReconciliationReport:
    run_id: str
    total_checked: int = 0
    mismatches: int = 0
    details: list[PriceMismatch] = field(default_factory=list)
    errors: list[ReconcileError] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


def _compare(target, live, tolerance: int) -> PriceMismatch | None:
    expected_amount = int(target.after_json["amount"])
    expected_currency = str(target.after_json["currency"]).upper()
    actual_currency = live.currency.upper()
    difference = abs(live.amount - expected_amount)
    if actual_currency == expected_currency and difference <= tolerance:
        return None

    percentage = round(difference / expected_amount * 100, 2) if expected_amount else 100.0
    return PriceMismatch(
        target_id=target.id,
        sku_id=target.sku_id,
        expected_amount=expected_amount,
        expected_currency=expected_currency,
        actual_amount=live.amount,
        actual_currency=actual_currency,
        difference=difference,
        percentage_difference=percentage,
    )


def reconcile_run(
    db: Session,
    *,
    run_id: str,
    channels: ChannelRegistry,
    actor: str = "system",
    scope: RequestScope | None = None,
    tolerance_minor: int | None = None,
    store: OutboxStore | None = None,
) -> ReconciliationReport:
    """Compare every APPLIED target with the channel's live price.

    Read-only against the channels: mismatches are reported, never corrected.
    Targets whose live price cannot be fetched are listed under ``errors`` and
    do not count as checked.
    """
    run = get_run(db, run_id, scope)
    if run.status not in (RunStatus.APPLIED, RunStatus.PARTIAL):
        raise InvalidState(f"Only APPLIED or PARTIAL runs can be reconciled, run {run.id} is {run.status}")

    tolerance = settings.reconcile_tolerance_minor if tolerance_minor is None else tolerance_minor
    report = ReconciliationReport(run_id=run.id)

    for target in list_targets(db, run.id, status=TargetStatus.APPLIED):
        try:
            live = channels.get(target.channel).get_current_price(target.external_ref)
        except Exception as exc:  # noqa: BLE001
            report.errors.append(
                ReconcileError(target_id=target.id, sku_id=target.sku_id, error=str(exc) or exc.__class__.__name__)
            )
            continue

        report.total_checked += 1
        mismatch = _compare(target, live, tolerance)
        if mismatch:
            report.details.append(mismatch)
            log_event(
                logger,
                "reconcile.mismatch",
                run_id=run.id,
                target_id=target.id,
                expected=format_minor_units(mismatch.expected_amount, mismatch.expected_currency),
                actual=format_minor_units(mismatch.actual_amount, mismatch.actual_currency),
            )

    report.mismatches = len(report.details)

    audit = log_audit_event(
        db,
        tenant_id=run.tenant_id,
        project_id=run.project_id,
        entity="rule_run",
        entity_id=run.id,
        action="reconcile",
        actor=actor,
        explain_json={"report": report.to_dict(), "tolerance_minor": tolerance},
    )

    store = store or SqlOutboxStore()
    store.publish(
        db,
        OutboxMessage(
            event_key=f"reconciliation-{run.id}-{audit.id}",
            tenant_id=run.tenant_id,
            project_id=run.project_id,
            event_type=RECONCILIATION_EVENT_TYPE,
            payload={
                "run_id": run.id,
                "total_checked": report.total_checked,
                "mismatch_count": report.mismatches,
                "error_count": len(report.errors),
                "timestamp": report.timestamp.isoformat(),
            },
        ),
    )

    log_event(
        logger,
        "reconcile.completed",
        run_id=run.id,
        total_checked=report.total_checked,
        mismatches=report.mismatches,
        errors=len(report.errors),
    )
    return report


def get_reconciliation_history(
    db: Session,
    *,
    run_id: str,
    scope: RequestScope | None = None,
) -> list[dict[str, Any]]:
    run = get_run(db, run_id, scope)
    records = list_audit_events(db, entity="rule_run", entity_id=run.id, action="reconcile")
    return [record.explain_json["report"] for record in records if record.explain_json]
