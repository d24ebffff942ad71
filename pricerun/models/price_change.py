from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from pricerun.core.clock import utc_now
from pricerun.db.base import Base


class PriceChange(Base):
    """One price written to a sales channel, attributed to its source."""

    __tablename__ = "price_changes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    rule_run_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("rule_runs.id"), nullable=True, index=True)
    rule_target_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("rule_targets.id"), nullable=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), nullable=False)
    sku_id: Mapped[str] = mapped_column(String(36), ForeignKey("skus.id"), nullable=False, index=True)
    variant_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    channel: Mapped[str] = mapped_column(String(40), nullable=False)
    source: Mapped[str] = mapped_column(String(80), nullable=False)
    from_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    to_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="APPLIED", server_default="APPLIED")
    applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(120), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_price_changes_tenant_project_created_at", "tenant_id", "project_id", "created_at"),
    )
