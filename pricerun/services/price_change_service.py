from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from pricerun.core.id_utils import generate_shortuuid
from pricerun.models.price_change import PriceChange
from pricerun.models.rule_run import RuleTarget


def record_price_change(
    db: Session,
    target: RuleTarget,
    *,
    from_json: dict,
    to_json: dict,
    source: str,
    created_by: str,
    applied_at: datetime,
) -> PriceChange:
    change = PriceChange(
        id=generate_shortuuid(),
        tenant_id=target.tenant_id,
        project_id=target.project_id,
        rule_run_id=target.rule_run_id,
        rule_target_id=target.id,
        product_id=target.product_id,
        sku_id=target.sku_id,
        variant_id=target.variant_id,
        channel=target.channel,
        source=source,
        from_amount=int(from_json["amount"]),
        to_amount=int(to_json["amount"]),
        currency=str(to_json["currency"]),
        status="APPLIED",
        applied_at=applied_at,
        created_by=created_by,
    )
    db.add(change)
    return change


def list_price_changes(db: Session, *, run_id: str) -> list[PriceChange]:
    return db.execute(
        select(PriceChange)
        .where(PriceChange.rule_run_id == run_id)
        .order_by(PriceChange.created_at.asc(), PriceChange.id.asc())
    ).scalars().all()
