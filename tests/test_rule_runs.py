from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from pricerun.core.clock import utc_now
from pricerun.core.config import settings
from pricerun.core.errors import (
    FatalChannelError,
    InvalidState,
    RetryableChannelError,
    RuleDisabled,
    RuleNotFound,
    RunNotFound,
)
from pricerun.core.id_utils import generate_shortuuid
from pricerun.core.scope import RequestScope
from pricerun.models.audit_log import AuditRecord
from pricerun.models.catalog import Price, Product, Sku
from pricerun.models.outbox import EventLog, OutboxEvent
from pricerun.models.price_change import PriceChange
from pricerun.models.pricing_rule import PricingRule
from pricerun.models.rule_run import RuleRun, RuleTarget
from pricerun.schemas.rule import PricingRuleCreateIn
from pricerun.services.catalog_service import create_rule
from pricerun.services.channel_connector import LivePrice
from pricerun.services.materializer import materialize
from pricerun.services.outbox_service import PENDING, get_event_log, get_outbox_event
from pricerun.services.price_change_service import list_price_changes
from pricerun.services.reconciliation_service import get_reconciliation_history, reconcile_run
from pricerun.services.rule_scheduler import SCHEDULED_EVENT_TYPE, due_rule_ids
from pricerun.services.run_service import (
    cancel_run,
    classify_error,
    get_run_status,
    list_failed_targets,
    list_runs,
    list_targets,
    queue_run,
    retry_failed_targets,
    rollback_run,
)
from pricerun.workers.rules_worker import RuleRunWorker

TENANT = "tenant-a"
PROJECT = "project-a"
SCOPE = RequestScope(tenant_id=TENANT, project_id=PROJECT, actor="tester")


def _seed_sku(
    db,
    *,
    code: str,
    amount: int | None = 10000,
    currency: str = "USD",
    tags: list[str] | None = None,
    category: str | None = None,
    channel: str | None = "shopify",
    missing_external_id: bool = False,
    tenant_id: str = TENANT,
    project_id: str = PROJECT,
) -> Sku:
    product = Product(
        id=generate_shortuuid(),
        tenant_id=tenant_id,
        project_id=project_id,
        name=f"Product {code}",
        category=category,
        tags_json=tags or [],
        channel=channel,
        active=True,
    )
    sku = Sku(
        id=generate_shortuuid(),
        tenant_id=tenant_id,
        project_id=project_id,
        product_id=product.id,
        code=code,
        external_id=None if missing_external_id else f"ext-{code}",
        active=True,
    )
    db.add_all([product, sku])
    if amount is not None:
        db.add(Price(id=generate_shortuuid(), sku_id=sku.id, currency=currency, amount=amount, active=True))
    db.flush()
    return sku


def _create_rule(db, *, transform: dict, selector: dict | None = None, enabled: bool = True, schedule_at=None):
    rule = create_rule(
        db,
        scope=SCOPE,
        payload=PricingRuleCreateIn(
            name="Test rule",
            selector=selector or {},
            transform=transform,
            enabled=enabled,
            schedule_at=schedule_at,
        ),
    )
    db.commit()
    return rule


def _queued_run(db, *, transform: dict | None = None, selector: dict | None = None) -> str:
    rule = _create_rule(db, transform=transform or {"op": "percent", "value": 5}, selector=selector)
    run = materialize(db, rule_id=rule.id, actor="tester", scope=SCOPE)
    db.commit()
    queue_run(db, run_id=run.id, scope=SCOPE)
    db.commit()
    return run.id


def _target_for(db, run_id: str, code: str) -> RuleTarget:
    return db.execute(
        select(RuleTarget)
        .join(Sku, Sku.id == RuleTarget.sku_id)
        .where(RuleTarget.rule_run_id == run_id, Sku.code == code)
    ).scalar_one()


def test_materialize_builds_preview_targets_without_touching_prices(pipeline):
    db, _, _ = pipeline
    sku = _seed_sku(db, code="TS-001", amount=10000)
    rule = _create_rule(db, transform={"op": "percent", "value": 5})

    run = materialize(db, rule_id=rule.id, actor="tester", scope=SCOPE)
    db.commit()

    assert run.status == "PREVIEW"
    assert run.created_by == "tester"
    targets = list_targets(db, run.id)
    assert len(targets) == 1
    assert targets[0].status == "PREVIEW"
    assert targets[0].attempts == 0
    assert targets[0].before_json == {"currency": "USD", "amount": 10000}
    assert targets[0].after_json == {"currency": "USD", "amount": 10500}
    assert targets[0].external_ref == "ext-TS-001"

    price = db.execute(select(Price).where(Price.sku_id == sku.id)).scalar_one()
    assert price.amount == 10000


def test_materialize_clamps_to_floor(pipeline):
    db, _, _ = pipeline
    _seed_sku(db, code="CHEAP-1", amount=500)
    rule = _create_rule(db, transform={"op": "percent", "value": 10, "floor": 1000})

    run = materialize(db, rule_id=rule.id, actor="tester", scope=SCOPE)

    assert list_targets(db, run.id)[0].after_json["amount"] == 1000


def test_selector_matches_tags_pattern_and_category(pipeline):
    db, _, _ = pipeline
    _seed_sku(db, code="TS-RED", tags=["summer"], category="Shirts")
    _seed_sku(db, code="ts-blue", tags=["sale", "Summer"], category="shirts")
    _seed_sku(db, code="HAT-1", tags=["summer"], category="Hats")
    _seed_sku(db, code="TS-GREEN", tags=["winter"], category="Shirts")
    _seed_sku(db, code="TS-OTHER", tags=["summer"], category="Shirts", tenant_id="tenant-b")
    rule = _create_rule(
        db,
        transform={"op": "absolute", "value": 100},
        selector={"tags": ["summer"], "sku_pattern": "TS-*", "category": "shirts"},
    )

    run = materialize(db, rule_id=rule.id, actor="tester", scope=SCOPE)

    matched = {item["sku_code"] for item in run.explain_json["matched"]}
    assert matched == {"TS-RED", "ts-blue"}
    assert len(list_targets(db, run.id)) == 2


def test_materialize_records_skipped_skus(pipeline):
    db, _, _ = pipeline
    _seed_sku(db, code="A", amount=10000)
    _seed_sku(db, code="B", amount=100)
    _seed_sku(db, code="C", amount=None)
    _seed_sku(db, code="D", channel=None)
    _seed_sku(db, code="E", missing_external_id=True)
    rule = _create_rule(db, transform={"op": "absolute", "value": -500})

    run = materialize(db, rule_id=rule.id, actor="tester", scope=SCOPE)

    reasons = {item["sku_code"]: item["reason"] for item in run.explain_json["skipped"]}
    assert reasons == {
        "B": "negative_price",
        "C": "no_active_price",
        "D": "missing_channel",
        "E": "missing_external_id",
    }
    targets = list_targets(db, run.id)
    assert len(targets) == 1
    assert targets[0].after_json["amount"] == 9500


def test_materialize_rejects_disabled_unknown_and_foreign_rules(pipeline):
    db, _, _ = pipeline
    disabled = _create_rule(db, transform={"op": "percent", "value": 5}, enabled=False)

    with pytest.raises(RuleDisabled):
        materialize(db, rule_id=disabled.id, actor="tester", scope=SCOPE)
    with pytest.raises(RuleNotFound):
        materialize(db, rule_id="missing", actor="tester", scope=SCOPE)

    enabled = _create_rule(db, transform={"op": "percent", "value": 5})
    foreign = RequestScope(tenant_id="tenant-b", project_id=PROJECT)
    with pytest.raises(RuleNotFound):
        materialize(db, rule_id=enabled.id, actor="tester", scope=foreign)


def test_queue_run_is_idempotent(pipeline):
    db, _, _ = pipeline
    _seed_sku(db, code="A")
    _seed_sku(db, code="B")
    rule = _create_rule(db, transform={"op": "percent", "value": 5})
    run = materialize(db, rule_id=rule.id, actor="tester", scope=SCOPE)
    db.commit()

    first = queue_run(db, run_id=run.id, scope=SCOPE)
    db.commit()
    second = queue_run(db, run_id=run.id, scope=SCOPE)
    db.commit()

    assert first.emitted is True
    assert second.emitted is False
    assert first.event_key == f"job-rules-apply-{run.id}"
    assert second.event_key == first.event_key
    assert db.execute(select(func.count(EventLog.id)).where(EventLog.event_key == first.event_key)).scalar_one() == 1
    assert db.execute(select(func.count(OutboxEvent.id))).scalar_one() == 1
    assert {target.status for target in list_targets(db, run.id)} == {"QUEUED"}
    assert db.get(RuleRun, run.id).queued_at is not None


def test_queue_run_rejects_unknown_and_finished_runs(pipeline):
    db, _, worker = pipeline
    _seed_sku(db, code="A")
    run_id = _queued_run(db)
    worker.run_once(db)

    with pytest.raises(InvalidState):
        queue_run(db, run_id=run_id, scope=SCOPE)
    with pytest.raises(RunNotFound):
        queue_run(db, run_id="missing", scope=SCOPE)


def test_end_to_end_apply_then_reconcile(pipeline):
    db, channels, worker = pipeline
    _seed_sku(db, code="A", amount=10000)
    run_id = _queued_run(db, transform={"op": "percent", "value": 5})

    summary = worker.run_once(db)

    assert summary.claimed == 1
    assert summary.delivered == 1
    run = db.get(RuleRun, run_id)
    assert run.status == "APPLIED"
    assert run.started_at is not None
    assert run.finished_at is not None
    target = list_targets(db, run_id)[0]
    assert target.status == "APPLIED"
    assert target.attempts == 1
    assert target.applied_at is not None
    assert channels.get("shopify").prices["ext-A"] == LivePrice(amount=10500, currency="USD")

    apply_audits = db.execute(
        select(func.count(AuditRecord.id)).where(AuditRecord.entity_id == run_id, AuditRecord.action == "rule_run.apply")
    ).scalar_one()
    assert apply_audits == 1
    completed_key = f"rule-run-completed-{run_id}-0"
    assert db.execute(select(EventLog).where(EventLog.event_key == completed_key)).scalar_one_or_none() is not None

    report = reconcile_run(db, run_id=run_id, channels=channels, scope=SCOPE)
    db.commit()
    assert report.total_checked == 1
    assert report.mismatches == 0
    assert report.errors == []


def test_partial_failure_reports_counts(pipeline):
    db, channels, worker = pipeline
    for code in ("A", "B", "C"):
        _seed_sku(db, code=code)
    run_id = _queued_run(db)
    channels.get("shopify").fail_next("ext-C", FatalChannelError("Invalid price for variant", status_code=422))

    worker.run_once(db)

    status = get_run_status(db, run_id=run_id, scope=SCOPE)
    assert status.status == "PARTIAL"
    assert status.applied == 2
    assert status.failed == 1
    assert status.pending == 0
    assert status.total == 3
    assert status.percent_complete == 100.0
    assert _target_for(db, run_id, "C").error_message == "Invalid price for variant"

    failed = list_failed_targets(db, run_id=run_id, scope=SCOPE)
    assert len(failed) == 1
    assert failed[0].category == "VALIDATION"
    assert failed[0].retryable is False


def test_retry_resets_failed_targets_without_new_rows(pipeline):
    db, channels, worker = pipeline
    for code in ("A", "B", "C"):
        _seed_sku(db, code=code)
    run_id = _queued_run(db)
    channels.get("shopify").fail_next("ext-B", FatalChannelError("Invalid price", status_code=422))
    channels.get("shopify").fail_next("ext-C", FatalChannelError("Invalid price", status_code=422))
    worker.run_once(db)
    assert db.get(RuleRun, run_id).status == "PARTIAL"
    rows_before = db.execute(select(func.count(RuleTarget.id))).scalar_one()

    result = retry_failed_targets(db, run_id=run_id, actor="tester", scope=SCOPE)
    db.commit()

    assert result.retried == 2
    assert result.emitted is True
    assert result.event_key == f"job-rules-apply-{run_id}-retry-1"
    assert db.execute(select(func.count(RuleTarget.id))).scalar_one() == rows_before
    for code in ("B", "C"):
        target = _target_for(db, run_id, code)
        assert target.status == "QUEUED"
        assert target.error_message is None
        assert target.attempts == 1
    assert _target_for(db, run_id, "A").status == "APPLIED"
    run = db.get(RuleRun, run_id)
    assert run.status == "QUEUED"
    assert run.dispatch_generation == 1

    worker.run_once(db)

    assert db.get(RuleRun, run_id).status == "APPLIED"
    assert _target_for(db, run_id, "B").attempts == 2
    assert _target_for(db, run_id, "A").attempts == 1


def test_retry_selected_targets_only(pipeline):
    db, channels, worker = pipeline
    for code in ("A", "B"):
        _seed_sku(db, code=code)
    run_id = _queued_run(db)
    for ref in ("ext-A", "ext-B"):
        channels.get("shopify").fail_next(ref, FatalChannelError("Invalid price", status_code=422))
    worker.run_once(db)
    assert db.get(RuleRun, run_id).status == "FAILED"

    target_a = _target_for(db, run_id, "A")
    result = retry_failed_targets(db, run_id=run_id, actor="tester", target_ids=[target_a.id], scope=SCOPE)
    db.commit()

    assert result.retried == 1
    assert _target_for(db, run_id, "A").status == "QUEUED"
    assert _target_for(db, run_id, "B").status == "FAILED"


def test_retry_requires_failed_or_partial_run(pipeline):
    db, _, worker = pipeline
    _seed_sku(db, code="A")
    run_id = _queued_run(db)
    worker.run_once(db)

    with pytest.raises(InvalidState):
        retry_failed_targets(db, run_id=run_id, actor="tester", scope=SCOPE)


def test_retryable_error_schedules_backoff_and_defers_event(pipeline, clock):
    db, channels, worker = pipeline
    _seed_sku(db, code="A")
    run_id = _queued_run(db)
    channels.get("shopify").fail_next("ext-A", RetryableChannelError("Service unavailable", status_code=503))

    first = worker.run_once(db)

    assert first.deferred == 1
    assert first.delivered == 0
    target = list_targets(db, run_id)[0]
    assert target.status == "QUEUED"
    assert target.attempts == 1
    assert target.error_message == "Service unavailable"
    delay = (target.next_attempt_at - target.last_attempt_at).total_seconds()
    assert 1.9 <= delay <= 2.1
    assert db.get(RuleRun, run_id).status == "APPLYING"

    assert worker.run_once(db).claimed == 0

    clock.advance(3)
    second = worker.run_once(db)

    assert second.delivered == 1
    assert db.get(RuleRun, run_id).status == "APPLIED"
    assert list_targets(db, run_id)[0].attempts == 2


def test_rate_limit_honours_retry_after(pipeline):
    db, channels, worker = pipeline
    _seed_sku(db, code="A")
    run_id = _queued_run(db)
    channels.get("shopify").fail_next(
        "ext-A",
        RetryableChannelError("Rate limit exceeded", status_code=429, retry_after_seconds=7),
    )

    worker.run_once(db)

    target = list_targets(db, run_id)[0]
    delay = (target.next_attempt_at - target.last_attempt_at).total_seconds()
    assert 6.9 <= delay <= 7.1


def test_retry_ceiling_marks_target_failed(pipeline, clock):
    db, channels, _ = pipeline
    worker = RuleRunWorker(
        channels=channels,
        settings=settings.model_copy(update={"apply_max_attempts": 2}),
        worker_id="test-ceiling",
        sleep=lambda _: None,
        clock=clock,
        rng=lambda: 0.5,
    )
    _seed_sku(db, code="A")
    run_id = _queued_run(db)
    channels.get("shopify").fail_next("ext-A", RetryableChannelError("Gateway timeout", status_code=504), times=5)

    worker.run_once(db)
    clock.advance(10)
    worker.run_once(db)

    target = list_targets(db, run_id)[0]
    assert target.status == "FAILED"
    assert target.attempts == 2
    assert "gave up after 2 attempts" in target.error_message
    assert db.get(RuleRun, run_id).status == "FAILED"


def test_unexpected_connector_error_fails_target(pipeline):
    db, channels, worker = pipeline

    class ExplodingConnector:
        name = "shopify"

        def update_price(self, sku_identifier, amount, currency):
            raise RuntimeError("socket closed")

        def get_current_price(self, sku_identifier):
            raise RuntimeError("socket closed")

    channels.register("shopify", ExplodingConnector())
    _seed_sku(db, code="A")
    _seed_sku(db, code="B", channel="ebay")
    run_id = _queued_run(db)

    summary = worker.run_once(db)

    assert summary.delivered == 1
    assert _target_for(db, run_id, "A").error_message == "socket closed"
    assert _target_for(db, run_id, "B").error_message.startswith("Unknown channel 'ebay'")
    assert db.get(RuleRun, run_id).status == "FAILED"


def test_zero_target_run_completes_as_applied(pipeline):
    db, _, worker = pipeline
    _seed_sku(db, code="A")
    run_id = _queued_run(db, selector={"sku_pattern": "NOPE-*"})

    worker.run_once(db)

    assert db.get(RuleRun, run_id).status == "APPLIED"
    assert get_run_status(db, run_id=run_id, scope=SCOPE).percent_complete == 0.0


def test_cancel_fails_pending_targets(pipeline):
    db, channels, worker = pipeline
    _seed_sku(db, code="A")
    _seed_sku(db, code="B")
    run_id = _queued_run(db)

    result = cancel_run(db, run_id=run_id, actor="tester", reason="Wrong rule", scope=SCOPE)
    db.commit()

    assert result.cancelled_targets == 2
    run = db.get(RuleRun, run_id)
    assert run.status == "FAILED"
    assert run.cancel_requested_at is not None
    assert {target.error_message for target in list_targets(db, run_id)} == {"Cancelled: Wrong rule"}

    summary = worker.run_once(db)
    assert summary.delivered == 1
    assert channels.get("shopify").calls == []


def test_cancel_leaves_in_flight_target_for_applier(test_context, pipeline):
    _, session_local = test_context
    db, channels, worker = pipeline
    _seed_sku(db, code="A")
    _seed_sku(db, code="B")
    run_id = _queued_run(db)
    stub = channels.get("shopify")

    class CancelDuringCall:
        name = "shopify"

        def __init__(self):
            self.cancelled = None

        def update_price(self, sku_identifier, amount, currency):
            if self.cancelled is None:
                other = session_local()
                try:
                    self.cancelled = cancel_run(other, run_id=run_id, actor="tester", reason="Stop", scope=SCOPE)
                    assert self.cancelled.run.status == "APPLYING"
                    other.commit()
                finally:
                    other.close()
            return stub.update_price(sku_identifier, amount, currency)

        def get_current_price(self, sku_identifier):
            return stub.get_current_price(sku_identifier)

    connector = CancelDuringCall()
    channels.register("shopify", connector)

    summary = worker.run_once(db)

    assert summary.delivered == 1
    assert connector.cancelled.cancelled_targets == 1
    assert len(stub.calls) == 1
    in_flight_code = stub.calls[0][0].removeprefix("ext-")
    other_code = "B" if in_flight_code == "A" else "A"
    assert _target_for(db, run_id, in_flight_code).status == "APPLIED"
    cancelled = _target_for(db, run_id, other_code)
    assert cancelled.status == "FAILED"
    assert cancelled.error_message == "Cancelled: Stop"
    run = db.get(RuleRun, run_id)
    assert run.status == "PARTIAL"
    assert run.error_message == "Cancelled: Stop"


def test_retry_after_cancel_schedules_retryable_errors(pipeline):
    db, channels, worker = pipeline
    _seed_sku(db, code="A")
    run_id = _queued_run(db)
    cancel_run(db, run_id=run_id, actor="tester", reason="Wrong rule", scope=SCOPE)
    db.commit()
    worker.run_once(db)
    assert db.get(RuleRun, run_id).status == "FAILED"

    retry_failed_targets(db, run_id=run_id, actor="tester", scope=SCOPE)
    db.commit()
    assert db.get(RuleRun, run_id).cancel_requested_at is None

    channels.get("shopify").fail_next("ext-A", RetryableChannelError("Service unavailable", status_code=503))
    summary = worker.run_once(db)

    assert summary.deferred == 1
    target = _target_for(db, run_id, "A")
    assert target.status == "QUEUED"
    assert target.next_attempt_at is not None
    assert target.error_message == "Service unavailable"
    assert db.get(RuleRun, run_id).status == "APPLYING"


def test_redelivered_apply_job_is_a_no_op_once_applied(pipeline):
    db, channels, worker = pipeline
    _seed_sku(db, code="A")
    run_id = _queued_run(db)
    worker.run_once(db)
    calls_before = list(channels.get("shopify").calls)
    assert len(calls_before) == 1

    event = get_outbox_event(db, f"job-rules-apply-{run_id}")
    event.status = PENDING
    event.next_attempt_at = utc_now() - timedelta(seconds=1)
    db.commit()

    summary = worker.run_once(db)

    assert summary.claimed == 1
    assert summary.delivered == 1
    assert channels.get("shopify").calls == calls_before
    assert db.get(RuleRun, run_id).status == "APPLIED"
    assert _target_for(db, run_id, "A").attempts == 1
    assert len(list_price_changes(db, run_id=run_id)) == 1


def test_target_already_applying_is_not_claimed_again(pipeline):
    db, channels, worker = pipeline
    _seed_sku(db, code="A")
    _seed_sku(db, code="B")
    run_id = _queued_run(db)
    busy = _target_for(db, run_id, "A")
    db.execute(
        update(RuleTarget)
        .where(RuleTarget.id == busy.id)
        .values(status="APPLYING", attempts=1, last_attempt_at=utc_now())
    )
    db.commit()

    summary = worker.run_once(db)

    assert summary.deferred == 1
    assert channels.get("shopify").calls == [("ext-B", 10500, "USD")]
    target = _target_for(db, run_id, "A")
    assert target.status == "APPLYING"
    assert target.attempts == 1
    assert _target_for(db, run_id, "B").status == "APPLIED"
    assert db.get(RuleRun, run_id).status == "APPLYING"


def test_stale_applying_target_is_released_and_applied(pipeline):
    db, channels, worker = pipeline
    _seed_sku(db, code="A")
    run_id = _queued_run(db)
    stale = _target_for(db, run_id, "A")
    db.execute(
        update(RuleTarget)
        .where(RuleTarget.id == stale.id)
        .values(
            status="APPLYING",
            attempts=1,
            last_attempt_at=utc_now() - timedelta(seconds=settings.outbox_lease_seconds + 60),
        )
    )
    db.commit()

    summary = worker.run_once(db)

    assert summary.delivered == 1
    target = _target_for(db, run_id, "A")
    assert target.status == "APPLIED"
    assert target.attempts == 2
    assert channels.get("shopify").calls == [("ext-A", 10500, "USD")]
    assert db.get(RuleRun, run_id).status == "APPLIED"


def test_cancel_requires_queued_or_applying_run(pipeline):
    db, _, _ = pipeline
    _seed_sku(db, code="A")
    rule = _create_rule(db, transform={"op": "percent", "value": 5})
    run = materialize(db, rule_id=rule.id, actor="tester", scope=SCOPE)
    db.commit()

    with pytest.raises(InvalidState):
        cancel_run(db, run_id=run.id, actor="tester", reason="Nope", scope=SCOPE)


def test_rollback_restores_previous_prices(pipeline):
    db, channels, worker = pipeline
    _seed_sku(db, code="A", amount=10000)
    run_id = _queued_run(db)
    worker.run_once(db)

    result = rollback_run(db, run_id=run_id, actor="tester", channels=channels, scope=SCOPE)
    db.commit()

    assert result.rolled_back == 1
    assert result.failed == 0
    run = db.get(RuleRun, run_id)
    assert run.status == "ROLLED_BACK"
    assert run.rolled_back_at is not None
    assert list_targets(db, run_id)[0].status == "ROLLED_BACK"
    assert channels.get("shopify").prices["ext-A"] == LivePrice(amount=10000, currency="USD")

    with pytest.raises(InvalidState):
        reconcile_run(db, run_id=run_id, channels=channels, scope=SCOPE)


def test_rollback_failure_keeps_target_applied(pipeline):
    db, channels, worker = pipeline
    _seed_sku(db, code="A")
    run_id = _queued_run(db)
    worker.run_once(db)
    channels.get("shopify").fail_next("ext-A", FatalChannelError("Product not found", status_code=404))

    result = rollback_run(db, run_id=run_id, actor="tester", channels=channels, scope=SCOPE)
    db.commit()

    assert result.failed == 1
    assert db.get(RuleRun, run_id).status == "APPLIED"
    target = list_targets(db, run_id)[0]
    assert target.status == "APPLIED"
    assert target.error_message == "Rollback failed: Product not found"


def test_reconcile_detects_drift(pipeline):
    db, channels, worker = pipeline
    _seed_sku(db, code="A", amount=10000)
    run_id = _queued_run(db)
    worker.run_once(db)
    channels.get("shopify").set_live_price("ext-A", 9900, "USD")

    report = reconcile_run(db, run_id=run_id, channels=channels, actor="tester", scope=SCOPE)
    db.commit()

    assert report.total_checked == 1
    assert report.mismatches == 1
    detail = report.details[0]
    assert detail.expected_amount == 10500
    assert detail.actual_amount == 9900
    assert detail.difference == 600
    assert detail.percentage_difference == 5.71

    history = get_reconciliation_history(db, run_id=run_id, scope=SCOPE)
    assert len(history) == 1
    assert history[0]["mismatches"] == 1
    assert db.execute(
        select(func.count(EventLog.id)).where(EventLog.event_type == "automation.reconciliation.completed")
    ).scalar_one() == 1


def test_reconcile_flags_currency_changes_and_fetch_errors(pipeline):
    db, channels, worker = pipeline
    _seed_sku(db, code="A", amount=10000)
    _seed_sku(db, code="B", amount=10000)
    run_id = _queued_run(db)
    worker.run_once(db)
    connector = channels.get("shopify")
    connector.set_live_price("ext-A", 10500, "EUR")
    connector.prices.pop("ext-B")

    report = reconcile_run(db, run_id=run_id, channels=channels, scope=SCOPE)

    assert report.total_checked == 1
    assert report.mismatches == 1
    assert report.details[0].actual_currency == "EUR"
    assert len(report.errors) == 1
    assert report.errors[0].target_id == _target_for(db, run_id, "B").id


def test_reconcile_tolerance(pipeline):
    db, channels, worker = pipeline
    _seed_sku(db, code="A", amount=10000)
    run_id = _queued_run(db)
    worker.run_once(db)
    channels.get("shopify").set_live_price("ext-A", 10550, "USD")

    report = reconcile_run(db, run_id=run_id, channels=channels, scope=SCOPE, tolerance_minor=100)

    assert report.total_checked == 1
    assert report.mismatches == 0


def test_list_runs_pages_newest_first(pipeline):
    db, _, _ = pipeline
    _seed_sku(db, code="A")
    rule = _create_rule(db, transform={"op": "percent", "value": 5})
    base = utc_now()
    run_ids = []
    for offset in range(3):
        run = materialize(db, rule_id=rule.id, actor="tester", scope=SCOPE)
        run.created_at = base + timedelta(seconds=offset)
        run_ids.append(run.id)
    db.commit()

    first = list_runs(db, scope=SCOPE, limit=2)
    assert [item.id for item in first.items] == [run_ids[2], run_ids[1]]
    assert first.next_cursor == run_ids[1]

    second = list_runs(db, scope=SCOPE, cursor=first.next_cursor, limit=2)
    assert [item.id for item in second.items] == [run_ids[0]]
    assert second.next_cursor is None

    assert list_runs(db, scope=SCOPE, status="QUEUED").items == []
    assert len(list_runs(db, scope=SCOPE, rule_id=rule.id).items) == 3
    assert list_runs(db, scope=RequestScope(tenant_id="tenant-b", project_id=PROJECT)).items == []
    with pytest.raises(InvalidState):
        list_runs(db, scope=SCOPE, cursor="missing")


@pytest.mark.parametrize(
    ("message", "category", "retryable"),
    [
        ("Rate limit exceeded (429)", "RATE_LIMIT", True),
        ("Request timed out", "TIMEOUT", True),
        ("Variant not found", "NOT_FOUND", False),
        ("401 Unauthorized", "AUTHORIZATION", False),
        ("Connection reset by peer", "NETWORK", True),
        ("Invalid price", "VALIDATION", False),
        ("500 Internal Server Error", "SERVER_ERROR", True),
        ("Cancelled: Wrong rule", "UNKNOWN", False),
        (None, "UNKNOWN", False),
    ],
)
def test_classify_error(message, category, retryable):
    assert classify_error(message) == (category, retryable)


def test_apply_and_rollback_record_price_changes(pipeline):
    db, _, worker = pipeline
    _seed_sku(db, code="A", amount=10000)
    run_id = _queued_run(db)
    rule_id = db.get(RuleRun, run_id).rule_id
    worker.run_once(db)

    applied = list_price_changes(db, run_id=run_id)
    assert len(applied) == 1
    assert applied[0].source == f"rule:{rule_id}"
    assert (applied[0].from_amount, applied[0].to_amount, applied[0].currency) == (10000, 10500, "USD")
    assert applied[0].created_by == "test-worker"
    assert applied[0].rule_target_id == _target_for(db, run_id, "A").id

    rollback_run(db, run_id=run_id, actor="tester", channels=worker.channels, scope=SCOPE)
    db.commit()

    changes = list_price_changes(db, run_id=run_id)
    assert [change.source for change in changes] == [f"rule:{rule_id}", f"rollback:{run_id}"]
    assert (changes[1].from_amount, changes[1].to_amount) == (10500, 10000)


def test_failed_target_writes_no_price_change(pipeline):
    db, channels, worker = pipeline
    _seed_sku(db, code="A")
    run_id = _queued_run(db)
    channels.get("shopify").fail_next("ext-A", FatalChannelError("Invalid price", status_code=422))

    worker.run_once(db)

    assert db.execute(select(func.count(PriceChange.id))).scalar_one() == 0
    assert db.get(RuleRun, run_id).status == "FAILED"


def _runs_for(db, rule_id: str) -> list[RuleRun]:
    return db.execute(select(RuleRun).where(RuleRun.rule_id == rule_id)).scalars().all()


def test_due_rule_is_materialized_queued_and_applied(pipeline):
    db, channels, worker = pipeline
    _seed_sku(db, code="A", amount=10000)
    slot = utc_now() - timedelta(minutes=1)
    rule = _create_rule(db, transform={"op": "percent", "value": 5}, schedule_at=slot)

    results = worker.run_scheduled(db)

    assert len(results) == 1
    assert results[0].status == "queued"
    run = db.get(RuleRun, results[0].run_id)
    assert run.status == "QUEUED"
    assert run.scheduled_for is not None
    assert run.explain_json["scheduled_by"] == "scheduler"
    assert db.get(PricingRule, rule.id).schedule_at is None

    event = get_event_log(db, f"rule-scheduled-{rule.id}-{run.id}")
    assert event.event_type == SCHEDULED_EVENT_TYPE
    assert event.payload_json["run_id"] == run.id
    audits = db.execute(
        select(func.count(AuditRecord.id)).where(AuditRecord.entity_id == run.id, AuditRecord.action == "rule_run.schedule")
    ).scalar_one()
    assert audits == 1

    worker.run_once(db)

    assert db.get(RuleRun, run.id).status == "APPLIED"
    assert channels.get("shopify").calls == [("ext-A", 10500, "USD")]


def test_future_schedule_waits_for_its_time(pipeline, clock):
    db, _, worker = pipeline
    _seed_sku(db, code="A")
    rule = _create_rule(db, transform={"op": "percent", "value": 5}, schedule_at=utc_now() + timedelta(hours=1))

    assert worker.run_scheduled(db) == []
    assert _runs_for(db, rule.id) == []

    clock.advance(3601)
    results = worker.run_scheduled(db)

    assert [result.status for result in results] == ["queued"]


def test_same_slot_is_not_queued_twice(pipeline):
    db, _, worker = pipeline
    _seed_sku(db, code="A")
    slot = utc_now() - timedelta(minutes=5)
    rule = _create_rule(db, transform={"op": "percent", "value": 5}, schedule_at=slot)
    first = worker.run_scheduled(db)[0]

    db.get(PricingRule, rule.id).schedule_at = slot
    db.commit()
    second = worker.run_scheduled(db)

    assert second[0].status == "skipped"
    assert second[0].run_id == first.run_id
    assert len(_runs_for(db, rule.id)) == 1
    assert db.get(PricingRule, rule.id).schedule_at is None


def test_disabled_and_unscheduled_rules_are_ignored(pipeline):
    db, _, worker = pipeline
    _seed_sku(db, code="A")
    past = utc_now() - timedelta(minutes=1)
    _create_rule(db, transform={"op": "percent", "value": 5}, schedule_at=past, enabled=False)
    _create_rule(db, transform={"op": "percent", "value": 5})

    assert due_rule_ids(db, now=utc_now()) == []
    assert worker.run_scheduled(db) == []


def test_scheduler_can_be_switched_off(pipeline):
    db, channels, _ = pipeline
    worker = RuleRunWorker(
        channels=channels,
        settings=settings.model_copy(update={"scheduler_enabled": False}),
        worker_id="test-no-scheduler",
        sleep=lambda _: None,
    )
    _seed_sku(db, code="A")
    rule = _create_rule(db, transform={"op": "percent", "value": 5}, schedule_at=utc_now() - timedelta(minutes=1))

    assert worker.run_scheduled(db) == []
    assert db.get(PricingRule, rule.id).schedule_at is not None
