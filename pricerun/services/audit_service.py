from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from pricerun.core.id_utils import generate_shortuuid
from pricerun.models.audit_log import AuditRecord


def log_audit_event(
    db: Session,
    *,
    tenant_id: str,
    project_id: str,
    entity: str,
    entity_id: str | None,
    action: str,
    actor: str,
    explain_json: dict[str, Any] | None = None,
) -> AuditRecord:
    record = AuditRecord(
        id=generate_shortuuid(),
        tenant_id=tenant_id,
        project_id=project_id,
        entity=entity,
        entity_id=entity_id,
        action=action,
        actor=actor,
        explain_json=explain_json,
    )
    db.add(record)
    return record


def list_audit_events(
    db: Session,
    *,
    entity: str,
    entity_id: str,
    action: str | None = None,
) -> list[AuditRecord]:
    stmt = select(AuditRecord).where(
        AuditRecord.entity == entity,
        AuditRecord.entity_id == entity_id,
    )
    if action:
        stmt = stmt.where(AuditRecord.action == action)
    return db.execute(stmt.order_by(AuditRecord.created_at.desc(), AuditRecord.id.desc())).scalars().all()
