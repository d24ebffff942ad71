from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pricerun.core.api_docs import error_responses
from pricerun.core.deps import get_db, get_scope
from pricerun.core.scope import RequestScope
from pricerun.models.pricing_rule import PricingRule
from pricerun.routers.runs import run_detail_out
from pricerun.schemas.rule import PricingRuleCreateIn, PricingRuleOut
from pricerun.schemas.run import RuleRunDetailOut
from pricerun.services.audit_service import log_audit_event
from pricerun.services.catalog_service import create_rule, get_rule
from pricerun.services.materializer import materialize
from pricerun.services.run_service import list_targets

router = APIRouter(prefix="/rules", tags=["rules"])


def _rule_out(rule: PricingRule) -> PricingRuleOut:
    return PricingRuleOut(
        id=rule.id,
        tenant_id=rule.tenant_id,
        project_id=rule.project_id,
        name=rule.name,
        description=rule.description,
        selector=rule.selector_json or {},
        transform=rule.transform_json,
        enabled=rule.enabled,
        version=rule.version,
        schedule_at=rule.schedule_at,
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


@router.post(
    "",
    response_model=PricingRuleOut,
    summary="Create a pricing rule",
    responses=error_responses(422, 500),
)
def create_pricing_rule(
    payload: PricingRuleCreateIn,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_scope),
):
    rule = create_rule(db, scope=scope, payload=payload)
    log_audit_event(
        db,
        tenant_id=scope.tenant_id,
        project_id=scope.project_id,
        entity="pricing_rule",
        entity_id=rule.id,
        action="pricing_rule.create",
        actor=scope.actor,
        explain_json={"selector": rule.selector_json, "transform": rule.transform_json},
    )
    db.commit()
    db.refresh(rule)
    return _rule_out(rule)


@router.get(
    "/{rule_id}",
    response_model=PricingRuleOut,
    summary="Get a pricing rule",
    responses=error_responses(404, 422, 500),
)
def get_pricing_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_scope),
):
    return _rule_out(get_rule(db, rule_id, scope))


@router.post(
    "/{rule_id}/materialize",
    response_model=RuleRunDetailOut,
    summary="Preview a rule as a new run of target price changes",
    responses=error_responses(400, 404, 422, 500),
)
def materialize_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    scope: RequestScope = Depends(get_scope),
):
    run = materialize(db, rule_id=rule_id, actor=scope.actor, scope=scope)
    db.commit()
    return run_detail_out(run, list_targets(db, run.id))
