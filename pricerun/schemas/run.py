from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from pricerun.schemas.common import CursorPageMeta


RunStatusValue = Literal["PREVIEW", "QUEUED", "APPLYING", "APPLIED", "PARTIAL", "FAILED", "ROLLED_BACK"]
TargetStatusValue = Literal["PREVIEW", "QUEUED", "APPLYING", "APPLIED", "FAILED", "ROLLED_BACK"]
ErrorCategory = Literal[
    "RATE_LIMIT",
    "TIMEOUT",
    "NOT_FOUND",
    "AUTHORIZATION",
    "NETWORK",
    "VALIDATION",
    "SERVER_ERROR",
    "UNKNOWN",
]


class PriceOut(BaseModel):
    currency: str
    amount: int


class RuleTargetOut(BaseModel):
    id: str
    rule_run_id: str
    product_id: str
    sku_id: str
    variant_id: str | None = None
    channel: str
    external_ref: str
    before: PriceOut
    after: PriceOut
    status: TargetStatusValue
    attempts: int
    error_message: str | None = None
    next_attempt_at: datetime | None = None
    last_attempt_at: datetime | None = None
    applied_at: datetime | None = None


class RuleRunOut(BaseModel):
    id: str
    rule_id: str
    tenant_id: str
    project_id: str
    status: RunStatusValue
    created_by: str
    dispatch_generation: int
    error_message: str | None = None
    explain: dict[str, Any] | None = None
    created_at: datetime
    queued_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cancel_requested_at: datetime | None = None
    rolled_back_at: datetime | None = None
    scheduled_for: datetime | None = None


class RuleRunDetailOut(RuleRunOut):
    targets: list[RuleTargetOut]


class RuleRunListOut(BaseModel):
    items: list[RuleRunOut]
    pagination: CursorPageMeta
    status: RunStatusValue | None = None
    rule_id: str | None = None


class QueueRunOut(BaseModel):
    run: RuleRunOut
    emitted: bool
    event_key: str


class RunProgressOut(BaseModel):
    run_id: str
    status: RunStatusValue
    total: int
    counts: dict[str, int]
    applied: int
    failed: int
    pending: int
    rolled_back: int
    percent_complete: float
    queued_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class RetryFailedIn(BaseModel):
    target_ids: list[str] | None = Field(default=None, min_length=1, max_length=1000)


class RetryFailedOut(BaseModel):
    run: RuleRunOut
    retried: int
    emitted: bool
    event_key: str


class CancelRunIn(BaseModel):
    reason: str = Field(default="Cancelled by user", min_length=1, max_length=200)


class CancelRunOut(BaseModel):
    run: RuleRunOut
    cancelled_targets: int


class RollbackOut(BaseModel):
    run: RuleRunOut
    rolled_back: int
    failed: int


class FailedTargetOut(BaseModel):
    id: str
    sku_id: str
    channel: str
    external_ref: str
    attempts: int
    error_message: str | None = None
    category: ErrorCategory
    retryable: bool
    last_attempt_at: datetime | None = None


class FailedTargetListOut(BaseModel):
    run_id: str
    items: list[FailedTargetOut]
    retryable: int


class MismatchOut(BaseModel):
    target_id: str
    sku_id: str
    expected_amount: int
    expected_currency: str
    actual_amount: int
    actual_currency: str
    difference: int
    percentage_difference: float


class ReconcileErrorOut(BaseModel):
    target_id: str
    sku_id: str
    error: str


class ReconciliationReportOut(BaseModel):
    run_id: str
    total_checked: int
    mismatches: int
    details: list[MismatchOut]
    errors: list[ReconcileErrorOut]
    timestamp: datetime


class ReconciliationHistoryOut(BaseModel):
    run_id: str
    items: list[ReconciliationReportOut]


class OutboxRunOut(BaseModel):
    claimed: int
    delivered: int
    deferred: int
    failed: int
    dead_lettered: int
