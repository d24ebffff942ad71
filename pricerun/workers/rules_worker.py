"""Outbox consumer that applies queued rule runs to their channels.

Each ``job.rules.apply`` event drives one pass over a run's due targets. A
target is claimed with a conditional UPDATE and the claim is committed before
the channel is called, so concurrent workers never apply the same target
twice. Retryable failures are rescheduled through ``next_attempt_at`` and the
event is deferred to the earliest of them instead of sleeping in-process.
"""

import argparse
import logging
import random
import signal
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from pricerun.core.clock import as_utc, utc_now
from pricerun.core.config import Settings, settings as default_settings
from pricerun.core.errors import ChannelError, FatalChannelError
from pricerun.core.id_utils import generate_worker_id
from pricerun.core.observability import log_event, setup_observability, worker_logger
from pricerun.core.throttle import ChannelThrottle
from pricerun.models.outbox import OutboxEvent
from pricerun.models.rule_run import RuleRun, RuleTarget, RunStatus, TargetStatus
from pricerun.services.audit_service import log_audit_event
from pricerun.services.backoff import BackoffPolicy, is_retryable, retry_delay_seconds
from pricerun.services.channel_connector import ChannelRegistry, build_channel_registry
from pricerun.services.outbox_service import DEAD_LETTER, OutboxMessage, OutboxStore, SqlOutboxStore
from pricerun.services.price_change_service import record_price_change
from pricerun.services.rule_scheduler import ScheduleResult, due_rule_ids, schedule_rule
from pricerun.services.run_metrics import record_run_metrics
from pricerun.services.run_service import (
    APPLY_EVENT_TYPE,
    RUN_COMPLETED_EVENT_TYPE,
    count_targets,
    recompute_run_status,
)


@dataclass(frozen=True)
class WorkerSummary:
    claimed: int
    delivered: int
    deferred: int
    failed: int
    dead_lettered: int


@dataclass(frozen=True)
class HandlerOutcome:
    defer_until: datetime | None = None
    detail: str | None = None


def _short_error(value: Exception | str) -> str:
    text = str(value).strip() or value.__class__.__name__
    if len(text) <= 255:
        return text
    return f"{text[:252]}..."


class RuleRunWorker:
    def __init__(
        self,
        *,
        channels: ChannelRegistry,
        store: OutboxStore | None = None,
        settings: Settings | None = None,
        worker_id: str | None = None,
        throttle: ChannelThrottle | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        rng: Callable[[], float] = random.random,
    ):
        self.channels = channels
        self.settings = settings or default_settings
        self.store = store or SqlOutboxStore(
            max_attempts=self.settings.outbox_max_attempts,
            retry_seconds=self.settings.outbox_retry_seconds,
            retry_max_seconds=self.settings.outbox_retry_max_seconds,
            lease_seconds=self.settings.outbox_lease_seconds,
        )
        self.worker_id = worker_id or generate_worker_id("rules")
        self.throttle = throttle or ChannelThrottle(min_interval_ms=self.settings.channel_min_interval_ms, sleep=sleep)
        self.clock = clock
        self.rng = rng
        self.backoff = BackoffPolicy.from_settings(self.settings)
        self.rate_limit_backoff = BackoffPolicy.rate_limit_from_settings(self.settings)
        self.handlers: dict[str, Callable[[Session, OutboxEvent], HandlerOutcome]] = {
            APPLY_EVENT_TYPE: self.handle_apply,
        }

    def run_once(self, db: Session, *, limit: int | None = None, tenant_id: str | None = None) -> WorkerSummary:
        """Claim and dispatch due events until none are left or ``limit`` is hit.

        ``tenant_id`` restricts the pass to one tenant's events; the standalone
        worker leaves it unset and serves every tenant.
        """
        limit = limit or self.settings.worker_batch_size
        counters = {"claimed": 0, "delivered": 0, "deferred": 0, "failed": 0, "dead_lettered": 0}

        while counters["claimed"] < limit:
            event = self.store.claim_next(
                db,
                worker_id=self.worker_id,
                event_types=list(self.handlers),
                now=self.clock(),
                tenant_id=tenant_id,
            )
            if event is None:
                break
            db.commit()
            counters["claimed"] += 1
            event_id = event.id
            event_type = event.event_type

            try:
                outcome = self.handlers[event_type](db, event)
            except Exception as exc:  # noqa: BLE001
                db.rollback()
                event = db.get(OutboxEvent, event_id, populate_existing=True)
                status = self.store.fail(db, event, error=_short_error(exc), worker_id=self.worker_id)
                db.commit()
                counters["dead_lettered" if status == DEAD_LETTER else "failed"] += 1
                log_event(
                    worker_logger,
                    "outbox.failed",
                    level=logging.ERROR,
                    worker_id=self.worker_id,
                    event_id=event_id,
                    event_type=event_type,
                    status=status,
                    error=_short_error(exc),
                )
                continue

            event = db.get(OutboxEvent, event_id, populate_existing=True)
            if outcome.defer_until is not None:
                self.store.defer(
                    db,
                    event,
                    until=outcome.defer_until,
                    worker_id=self.worker_id,
                    detail=outcome.detail,
                )
                counters["deferred"] += 1
                log_event(
                    worker_logger,
                    "outbox.deferred",
                    worker_id=self.worker_id,
                    event_id=event_id,
                    until=outcome.defer_until,
                )
            else:
                self.store.complete(db, event, worker_id=self.worker_id, detail=outcome.detail)
                counters["delivered"] += 1
            db.commit()

        return WorkerSummary(**counters)

    def run_scheduled(self, db: Session, *, limit: int | None = None) -> list[ScheduleResult]:
        """Queue every enabled rule whose schedule_at has passed, one commit per rule."""
        if not self.settings.scheduler_enabled:
            return []
        now = self.clock()
        results = []
        for rule_id in due_rule_ids(db, now=now, limit=limit or self.settings.scheduler_batch_size):
            try:
                result = schedule_rule(db, rule_id=rule_id, now=now, store=self.store)
                db.commit()
            except Exception as exc:  # noqa: BLE001
                db.rollback()
                log_event(
                    worker_logger,
                    "scheduler.failed",
                    level=logging.ERROR,
                    worker_id=self.worker_id,
                    rule_id=rule_id,
                    error=_short_error(exc),
                )
                result = ScheduleResult(rule_id=rule_id, run_id=None, status="failed", detail=_short_error(exc))
            results.append(result)
        return results

    def run_forever(self, session_factory: sessionmaker, stop_event: threading.Event) -> None:
        log_event(worker_logger, "worker.started", worker_id=self.worker_id)
        while not stop_event.is_set():
            summary = None
            with session_factory() as db:
                try:
                    self.run_scheduled(db)
                    summary = self.run_once(db, limit=self.settings.worker_batch_size)
                except Exception as exc:  # noqa: BLE001
                    db.rollback()
                    log_event(
                        worker_logger,
                        "worker.error",
                        level=logging.ERROR,
                        worker_id=self.worker_id,
                        error=_short_error(exc),
                    )
            if summary is None or summary.claimed == 0:
                stop_event.wait(self.settings.worker_poll_interval_seconds)
        log_event(worker_logger, "worker.stopped", worker_id=self.worker_id)

    def handle_apply(self, db: Session, event: OutboxEvent) -> HandlerOutcome:
        payload: dict[str, Any] = event.payload_json or {}
        run_id = payload.get("run_id")
        run = db.get(RuleRun, run_id) if run_id else None
        if run is None:
            log_event(
                worker_logger,
                "apply.run_missing",
                level=logging.WARNING,
                worker_id=self.worker_id,
                event_id=event.id,
                run_id=run_id,
            )
            return HandlerOutcome(detail=f"Run {run_id} not found")

        now = self.clock()
        db.execute(
            update(RuleRun)
            .where(RuleRun.id == run.id, RuleRun.status == RunStatus.QUEUED)
            .values(status=RunStatus.APPLYING)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(run)
        if run.status != RunStatus.APPLYING:
            return HandlerOutcome(detail=f"Run {run.id} is {run.status}")
        if run.started_at is None:
            run.started_at = now
            db.commit()

        self._requeue_stale_targets(db, run.id, now)

        due_ids = db.execute(
            select(RuleTarget.id)
            .where(
                RuleTarget.rule_run_id == run.id,
                RuleTarget.status == TargetStatus.QUEUED,
                or_(RuleTarget.next_attempt_at.is_(None), RuleTarget.next_attempt_at <= now),
            )
            .order_by(RuleTarget.created_at.asc(), RuleTarget.id.asc())
        ).scalars().all()

        for target_id in due_ids:
            self._apply_target(db, target_id)

        run = db.get(RuleRun, run.id, populate_existing=True)
        now = self.clock()
        if run.status != RunStatus.APPLYING:
            return HandlerOutcome(detail=f"Run {run.id} is {run.status}")
        if recompute_run_status(db, run, now=now):
            self._finish_run(db, run)
            return HandlerOutcome(detail=f"Run {run.id} finished as {run.status}")

        earliest = db.execute(
            select(func.min(RuleTarget.next_attempt_at)).where(
                RuleTarget.rule_run_id == run.id,
                RuleTarget.status == TargetStatus.QUEUED,
                RuleTarget.next_attempt_at > now,
            )
        ).scalar_one_or_none()
        if earliest is not None:
            until = as_utc(earliest)
        else:
            until = now + timedelta(seconds=self.settings.worker_poll_interval_seconds)
        return HandlerOutcome(defer_until=until, detail="Targets waiting for retry")

    def _requeue_stale_targets(self, db: Session, run_id: str, now: datetime) -> None:
        # A worker that died mid-call leaves its target APPLYING; release it after the lease.
        cutoff = now - timedelta(seconds=self.settings.outbox_lease_seconds)
        result = db.execute(
            update(RuleTarget)
            .where(
                RuleTarget.rule_run_id == run_id,
                RuleTarget.status == TargetStatus.APPLYING,
                RuleTarget.last_attempt_at < cutoff,
            )
            .values(status=TargetStatus.QUEUED, next_attempt_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            db.commit()
            log_event(worker_logger, "apply.requeued_stale", worker_id=self.worker_id, run_id=run_id, count=result.rowcount)

    def _apply_target(self, db: Session, target_id: str) -> None:
        now = self.clock()
        claimed = db.execute(
            update(RuleTarget)
            .where(RuleTarget.id == target_id, RuleTarget.status == TargetStatus.QUEUED)
            .values(
                status=TargetStatus.APPLYING,
                attempts=RuleTarget.attempts + 1,
                last_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()
        if claimed != 1:
            return

        target = db.get(RuleTarget, target_id, populate_existing=True)
        after = target.after_json
        try:
            connector = self.channels.get(target.channel)
            self.throttle.wait(target.channel)
            result = connector.update_price(target.external_ref, int(after["amount"]), str(after["currency"]))
            if result.success:
                error = None
            else:
                error = result.error or FatalChannelError("Channel rejected the price update")
        except ChannelError as exc:
            error = exc
        except Exception as exc:  # noqa: BLE001
            error = FatalChannelError(_short_error(exc), code="UNEXPECTED")

        self._record_result(db, target, error)
        db.commit()

    def _record_result(self, db: Session, target: RuleTarget, error: ChannelError | None) -> None:
        now = self.clock()
        attempts_used = target.attempts - target.attempts_at_dispatch
        if error is None:
            values = {
                "status": TargetStatus.APPLIED,
                "error_message": None,
                "next_attempt_at": None,
                "applied_at": now,
            }
            outcome = "applied"
        elif is_retryable(error):
            run = db.get(RuleRun, target.rule_run_id, populate_existing=True)
            if run.cancel_requested_at is not None:
                values = {
                    "status": TargetStatus.FAILED,
                    "error_message": run.error_message or "Cancelled",
                    "next_attempt_at": None,
                }
                outcome = "cancelled"
            elif attempts_used >= self.settings.apply_max_attempts:
                values = {
                    "status": TargetStatus.FAILED,
                    "error_message": _short_error(f"{error.message} (gave up after {attempts_used} attempts)"),
                    "next_attempt_at": None,
                }
                outcome = "exhausted"
            else:
                delay = retry_delay_seconds(
                    error,
                    attempts_used - 1,
                    policy=self.backoff,
                    rate_limit_policy=self.rate_limit_backoff,
                    rng=self.rng,
                )
                values = {
                    "status": TargetStatus.QUEUED,
                    "error_message": _short_error(error.message),
                    "next_attempt_at": now + timedelta(seconds=delay),
                }
                outcome = "retry_scheduled"
        else:
            values = {
                "status": TargetStatus.FAILED,
                "error_message": _short_error(error.message),
                "next_attempt_at": None,
            }
            outcome = "failed"

        written = db.execute(
            update(RuleTarget)
            .where(RuleTarget.id == target.id, RuleTarget.status == TargetStatus.APPLYING)
            .values(updated_at=now, **values)
            .execution_options(synchronize_session=False)
        ).rowcount
        if error is None and written == 1:
            run = db.get(RuleRun, target.rule_run_id)
            record_price_change(
                db,
                target,
                from_json=target.before_json,
                to_json=target.after_json,
                source=f"rule:{run.rule_id}",
                created_by=self.worker_id,
                applied_at=now,
            )
        log_event(
            worker_logger,
            "apply.target",
            level=logging.INFO if error is None else logging.WARNING,
            worker_id=self.worker_id,
            run_id=target.rule_run_id,
            target_id=target.id,
            channel=target.channel,
            attempts=target.attempts,
            outcome=outcome,
            next_attempt_at=values.get("next_attempt_at"),
            error=values.get("error_message"),
        )

    def _finish_run(self, db: Session, run: RuleRun) -> None:
        counts = count_targets(db, run.id)
        log_audit_event(
            db,
            tenant_id=run.tenant_id,
            project_id=run.project_id,
            entity="rule_run",
            entity_id=run.id,
            action="rule_run.apply",
            actor=self.worker_id,
            explain_json={
                "status": run.status,
                "dispatch_generation": run.dispatch_generation,
                "counts": counts,
            },
        )
        self.store.publish(
            db,
            OutboxMessage(
                event_key=f"rule-run-completed-{run.id}-{run.dispatch_generation}",
                tenant_id=run.tenant_id,
                project_id=run.project_id,
                event_type=RUN_COMPLETED_EVENT_TYPE,
                payload={
                    "run_id": run.id,
                    "rule_id": run.rule_id,
                    "status": run.status,
                    "applied": counts[TargetStatus.APPLIED],
                    "failed": counts[TargetStatus.FAILED],
                },
            ),
        )
        record_run_metrics(run, counts, alert_below_percent=self.settings.apply_success_rate_alert_percent)
        log_event(worker_logger, "apply.run_finished", worker_id=self.worker_id, run_id=run.id, status=run.status)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Apply queued pricing rule runs from the outbox.")
    parser.add_argument("--once", action="store_true", help="Process one batch of due events and exit.")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--worker-id", default=None)
    args = parser.parse_args(argv)

    setup_observability()
    from pricerun.db.session import SessionLocal

    worker = RuleRunWorker(channels=build_channel_registry(), worker_id=args.worker_id)
    if args.once:
        with SessionLocal() as db:
            worker.run_scheduled(db)
            summary = worker.run_once(db, limit=args.batch_size)
        log_event(worker_logger, "worker.batch", worker_id=worker.worker_id, **summary.__dict__)
        return

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
    signal.signal(signal.SIGINT, lambda *_: stop_event.set())
    worker.run_forever(SessionLocal, stop_event)


if __name__ == "__main__":
    main()
