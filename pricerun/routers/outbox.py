from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from pricerun.core.api_docs import error_responses
from pricerun.core.deps import get_db, get_scope, get_worker
from pricerun.core.scope import RequestScope
from pricerun.schemas.run import OutboxRunOut
from pricerun.services.audit_service import log_audit_event
from pricerun.workers.rules_worker import RuleRunWorker

router = APIRouter(prefix="/outbox", tags=["outbox"])


@router.post(
    "/run",
    response_model=OutboxRunOut,
    summary="Process the caller's due outbox events inline",
    responses=error_responses(422, 500),
)
def run_outbox(
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_scope),
    worker: RuleRunWorker = Depends(get_worker),
):
    summary = worker.run_once(db, limit=limit, tenant_id=scope.tenant_id)
    log_audit_event(
        db,
        tenant_id=scope.tenant_id,
        project_id=scope.project_id,
        entity="outbox",
        entity_id=None,
        action="outbox.run",
        actor=scope.actor,
        explain_json=summary.__dict__,
    )
    db.commit()
    return OutboxRunOut(**summary.__dict__)
