from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pricerun.core.clock import as_utc
from pricerun.core.errors import RuleNotFound
from pricerun.core.id_utils import generate_shortuuid
from pricerun.core.scope import RequestScope
from pricerun.models.catalog import Price, Product, Sku
from pricerun.models.pricing_rule import PricingRule
from pricerun.schemas.rule import PricingRuleCreateIn


@dataclass(frozen=True)
class CatalogMatch:
    product: Product
    sku: Sku
    price: Price


def create_rule(db: Session, *, scope: RequestScope, payload: PricingRuleCreateIn) -> PricingRule:
    rule = PricingRule(
        id=generate_shortuuid(),
        tenant_id=scope.tenant_id,
        project_id=scope.project_id,
        name=payload.name.strip(),
        description=payload.description,
        selector_json=payload.selector.model_dump(exclude_none=True),
        transform_json=payload.transform.model_dump(exclude_defaults=True),
        enabled=payload.enabled,
        schedule_at=as_utc(payload.schedule_at) if payload.schedule_at else None,
        version=1,
    )
    db.add(rule)
    db.flush()
    return rule


def get_rule(db: Session, rule_id: str, scope: RequestScope | None = None) -> PricingRule:
    stmt = select(PricingRule).where(PricingRule.id == rule_id)
    if scope is not None:
        stmt = stmt.where(
            PricingRule.tenant_id == scope.tenant_id,
            PricingRule.project_id == scope.project_id,
        )
    rule = db.execute(stmt).scalar_one_or_none()
    if not rule:
        raise RuleNotFound(rule_id)
    return rule


def _matches_tags(product: Product, tags: list[str] | None) -> bool:
    if not tags:
        return True
    product_tags = {str(tag).lower() for tag in (product.tags_json or [])}
    return any(tag.lower() in product_tags for tag in tags)


def _matches_pattern(sku: Sku, pattern: str | None) -> bool:
    if not pattern:
        return True
    return fnmatchcase(sku.code.lower(), pattern.lower())


def select_prices(db: Session, rule: PricingRule) -> tuple[list[CatalogMatch], list[dict[str, Any]]]:
    """Resolve the rule's selector to (product, sku, active price) tuples.

    Returns the matches plus one skip note per SKU that passed the selector but
    cannot be priced (no channel, no external id, or no active price).
    """
    selector = rule.selector_json or {}
    stmt = (
        select(Product, Sku)
        .join(Sku, Sku.product_id == Product.id)
        .where(
            Product.tenant_id == rule.tenant_id,
            Product.project_id == rule.project_id,
            Product.active.is_(True),
            Sku.active.is_(True),
        )
    )
    category = selector.get("category")
    if category:
        stmt = stmt.where(func.lower(Product.category) == category.lower())

    rows = db.execute(stmt.order_by(Product.created_at.asc(), Product.id.asc(), Sku.code.asc())).all()

    matches: list[CatalogMatch] = []
    skipped: list[dict[str, Any]] = []
    for product, sku in rows:
        if not _matches_tags(product, selector.get("tags")):
            continue
        if not _matches_pattern(sku, selector.get("sku_pattern")):
            continue

        if not product.channel:
            skipped.append({"sku_id": sku.id, "sku_code": sku.code, "reason": "missing_channel"})
            continue
        if not sku.external_id:
            skipped.append({"sku_id": sku.id, "sku_code": sku.code, "reason": "missing_external_id"})
            continue

        prices = db.execute(
            select(Price)
            .where(Price.sku_id == sku.id, Price.active.is_(True))
            .order_by(Price.currency.asc(), Price.id.asc())
        ).scalars().all()
        if not prices:
            skipped.append({"sku_id": sku.id, "sku_code": sku.code, "reason": "no_active_price"})
            continue

        for price in prices:
            matches.append(CatalogMatch(product=product, sku=sku, price=price))

    return matches, skipped
