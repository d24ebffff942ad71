from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from pricerun.core.api_docs import error_responses
from pricerun.core.config import settings
from pricerun.core.deps import get_channel_registry, get_db, get_scope
from pricerun.core.scope import RequestScope
from pricerun.models.rule_run import RuleRun, RuleTarget
from pricerun.schemas.common import CursorPageMeta
from pricerun.schemas.run import (
    CancelRunIn,
    CancelRunOut,
    FailedTargetListOut,
    FailedTargetOut,
    PriceOut,
    QueueRunOut,
    ReconciliationHistoryOut,
    ReconciliationReportOut,
    RetryFailedIn,
    RetryFailedOut,
    RollbackOut,
    RuleRunDetailOut,
    RuleRunListOut,
    RuleRunOut,
    RuleTargetOut,
    RunProgressOut,
    RunStatusValue,
)
from pricerun.services.channel_connector import ChannelRegistry
from pricerun.services.reconciliation_service import get_reconciliation_history, reconcile_run
from pricerun.services.run_service import (
    cancel_run,
    get_run,
    get_run_status,
    list_failed_targets,
    list_runs,
    list_targets,
    queue_run,
    retry_failed_targets,
    rollback_run,
)

router = APIRouter(prefix="/runs", tags=["runs"])


def target_out(target: RuleTarget) -> RuleTargetOut:
    return RuleTargetOut(
        id=target.id,
        rule_run_id=target.rule_run_id,
        product_id=target.product_id,
        sku_id=target.sku_id,
        variant_id=target.variant_id,
        channel=target.channel,
        external_ref=target.external_ref,
        before=PriceOut(**target.before_json),
        after=PriceOut(**target.after_json),
        status=target.status,
        attempts=target.attempts,
        error_message=target.error_message,
        next_attempt_at=target.next_attempt_at,
        last_attempt_at=target.last_attempt_at,
        applied_at=target.applied_at,
    )


def run_out(run: RuleRun) -> RuleRunOut:
    return RuleRunOut(
        id=run.id,
        rule_id=run.rule_id,
        tenant_id=run.tenant_id,
        project_id=run.project_id,
        status=run.status,
        created_by=run.created_by,
        dispatch_generation=run.dispatch_generation,
        error_message=run.error_message,
        explain=run.explain_json,
        created_at=run.created_at,
        queued_at=run.queued_at,
        started_at=run.started_at,
        finished_at=run.finished_at,
        cancel_requested_at=run.cancel_requested_at,
        rolled_back_at=run.rolled_back_at,
        scheduled_for=run.scheduled_for,
    )


def run_detail_out(run: RuleRun, targets: list[RuleTarget]) -> RuleRunDetailOut:
    return RuleRunDetailOut(
        **run_out(run).model_dump(),
        targets=[target_out(item) for item in targets],
    )


@router.get(
    "",
    response_model=RuleRunListOut,
    summary="List rule runs, newest first",
    responses=error_responses(400, 422, 500),
)
def list_rule_runs(
    status: RunStatusValue | None = Query(default=None),
    rule_id: str | None = Query(default=None, max_length=36),
    cursor: str | None = Query(default=None, max_length=36),
    limit: int | None = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_scope),
):
    page_size = limit or settings.runs_page_size
    page = list_runs(db, scope=scope, status=status, rule_id=rule_id, cursor=cursor, limit=page_size)
    return RuleRunListOut(
        items=[run_out(item) for item in page.items],
        pagination=CursorPageMeta(
            limit=page_size,
            count=len(page.items),
            next_cursor=page.next_cursor,
            has_next=page.next_cursor is not None,
        ),
        status=status,
        rule_id=rule_id,
    )


@router.get(
    "/{run_id}",
    response_model=RuleRunDetailOut,
    summary="Get a rule run with its targets",
    responses=error_responses(404, 422, 500),
)
def get_rule_run(
    run_id: str,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_scope),
):
    run = get_run(db, run_id, scope)
    return run_detail_out(run, list_targets(db, run.id))


@router.get(
    "/{run_id}/progress",
    response_model=RunProgressOut,
    summary="Target counts and completion percentage for a run",
    responses=error_responses(404, 422, 500),
)
def get_rule_run_progress(
    run_id: str,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_scope),
):
    summary = get_run_status(db, run_id=run_id, scope=scope)
    return RunProgressOut(**summary.__dict__)


@router.post(
    "/{run_id}/queue",
    response_model=QueueRunOut,
    summary="Queue a previewed run for application",
    responses=error_responses(400, 404, 422, 500),
)
def queue_rule_run(
    run_id: str,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_scope),
):
    result = queue_run(db, run_id=run_id, scope=scope)
    db.commit()
    return QueueRunOut(run=run_out(result.run), emitted=result.emitted, event_key=result.event_key)


@router.post(
    "/{run_id}/retry-failed",
    response_model=RetryFailedOut,
    summary="Re-queue failed targets of a FAILED or PARTIAL run",
    responses=error_responses(400, 404, 422, 500),
)
def retry_failed(
    run_id: str,
    payload: RetryFailedIn | None = None,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_scope),
):
    result = retry_failed_targets(
        db,
        run_id=run_id,
        actor=scope.actor,
        target_ids=payload.target_ids if payload else None,
        scope=scope,
    )
    db.commit()
    return RetryFailedOut(
        run=run_out(result.run),
        retried=result.retried,
        emitted=result.emitted,
        event_key=result.event_key,
    )


@router.get(
    "/{run_id}/failed-targets",
    response_model=FailedTargetListOut,
    summary="Failed targets with an error classification",
    responses=error_responses(404, 422, 500),
)
def get_failed_targets(
    run_id: str,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_scope),
):
    items = list_failed_targets(db, run_id=run_id, scope=scope)
    return FailedTargetListOut(
        run_id=run_id,
        items=[
            FailedTargetOut(
                id=item.target.id,
                sku_id=item.target.sku_id,
                channel=item.target.channel,
                external_ref=item.target.external_ref,
                attempts=item.target.attempts,
                error_message=item.target.error_message,
                category=item.category,
                retryable=item.retryable,
                last_attempt_at=item.target.last_attempt_at,
            )
            for item in items
        ],
        retryable=sum(1 for item in items if item.retryable),
    )


@router.post(
    "/{run_id}/cancel",
    response_model=CancelRunOut,
    summary="Cancel a queued or applying run",
    responses=error_responses(400, 404, 422, 500),
)
def cancel_rule_run(
    run_id: str,
    payload: CancelRunIn | None = None,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_scope),
):
    reason = payload.reason if payload else "Cancelled by user"
    result = cancel_run(db, run_id=run_id, actor=scope.actor, reason=reason, scope=scope)
    db.commit()
    return CancelRunOut(run=run_out(result.run), cancelled_targets=result.cancelled_targets)


@router.post(
    "/{run_id}/rollback",
    response_model=RollbackOut,
    summary="Restore the previous price of every applied target",
    responses=error_responses(400, 404, 422, 500),
)
def rollback_rule_run(
    run_id: str,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_scope),
    channels: ChannelRegistry = Depends(get_channel_registry),
):
    result = rollback_run(db, run_id=run_id, actor=scope.actor, channels=channels, scope=scope)
    db.commit()
    return RollbackOut(run=run_out(result.run), rolled_back=result.rolled_back, failed=result.failed)


@router.post(
    "/{run_id}/reconcile",
    response_model=ReconciliationReportOut,
    summary="Compare applied prices with live channel prices",
    responses=error_responses(400, 404, 422, 500),
)
def reconcile_rule_run(
    run_id: str,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_scope),
    channels: ChannelRegistry = Depends(get_channel_registry),
):
    report = reconcile_run(db, run_id=run_id, channels=channels, actor=scope.actor, scope=scope)
    db.commit()
    return ReconciliationReportOut(**report.to_dict())


@router.get(
    "/{run_id}/reconciliations",
    response_model=ReconciliationHistoryOut,
    summary="Past reconciliation reports for a run",
    responses=error_responses(404, 422, 500),
)
def list_reconciliations(
    run_id: str,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_scope),
):
    reports = get_reconciliation_history(db, run_id=run_id, scope=scope)
    return ReconciliationHistoryOut(
        run_id=run_id,
        items=[ReconciliationReportOut(**item) for item in reports],
    )
