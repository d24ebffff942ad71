from sqlalchemy.orm import Session

from pricerun.core.errors import RuleDisabled
from pricerun.core.id_utils import generate_shortuuid
from pricerun.core.scope import RequestScope
from pricerun.models.rule_run import RuleRun, RuleTarget, RunStatus, TargetStatus
from pricerun.schemas.rule import parse_transform
from pricerun.services.audit_service import log_audit_event
from pricerun.services.catalog_service import get_rule, select_prices
from pricerun.services.pricing_transform import apply_transform


def materialize(
    db: Session,
    *,
    rule_id: str,
    actor: str,
    scope: RequestScope | None = None,
) -> RuleRun:
    """Expand a pricing rule into a PREVIEW run with one target per matched price.

    Prices are never written here; the run only records before/after values.
    """
    rule = get_rule(db, rule_id, scope)
    if not rule.enabled:
        raise RuleDisabled(rule.id)

    transform = parse_transform(rule.transform_json)
    matches, skipped = select_prices(db, rule)

    run = RuleRun(
        id=generate_shortuuid(),
        rule_id=rule.id,
        tenant_id=rule.tenant_id,
        project_id=rule.project_id,
        status=RunStatus.PREVIEW,
        created_by=actor,
        dispatch_generation=0,
    )
    db.add(run)

    matched = []
    for match in matches:
        result = apply_transform(match.price.amount, transform)
        if result.amount is None:
            skipped.append(
                {
                    "sku_id": match.sku.id,
                    "sku_code": match.sku.code,
                    "currency": match.price.currency,
                    "reason": result.skipped_reason,
                }
            )
            continue

        target = RuleTarget(
            id=generate_shortuuid(),
            rule_run_id=run.id,
            tenant_id=rule.tenant_id,
            project_id=rule.project_id,
            product_id=match.product.id,
            sku_id=match.sku.id,
            variant_id=match.sku.variant_id,
            channel=match.product.channel,
            external_ref=match.sku.external_id,
            before_json={"currency": match.price.currency, "amount": match.price.amount},
            after_json={"currency": match.price.currency, "amount": result.amount},
            status=TargetStatus.PREVIEW,
            attempts=0,
            attempts_at_dispatch=0,
        )
        db.add(target)
        matched.append(
            {
                "sku_id": match.sku.id,
                "sku_code": match.sku.code,
                "currency": match.price.currency,
                "before": match.price.amount,
                "after": result.amount,
            }
        )

    run.explain_json = {
        "rule_version": rule.version,
        "selector": rule.selector_json,
        "transform": rule.transform_json,
        "matched": matched,
        "skipped": skipped,
    }

    log_audit_event(
        db,
        tenant_id=rule.tenant_id,
        project_id=rule.project_id,
        entity="rule_run",
        entity_id=run.id,
        action="rule_run.materialize",
        actor=actor,
        explain_json={"rule_id": rule.id, "targets": len(matched), "skipped": len(skipped)},
    )
    db.flush()
    return run
