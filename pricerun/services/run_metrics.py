import logging
from dataclasses import dataclass

from pricerun.core.clock import as_utc
from pricerun.core.observability import log_event, worker_logger
from pricerun.models.rule_run import RuleRun, TargetStatus

LOW_SUCCESS_RATE = "LOW_SUCCESS_RATE"


@dataclass(frozen=True)
class RunMetrics:
    run_id: str
    status: str
    applied: int
    failed: int
    duration_ms: int | None
    success_rate: float | None
    alert: str | None = None


def compute_run_metrics(run: RuleRun, counts: dict[str, int], *, alert_below_percent: float) -> RunMetrics:
    """Summarize a finished apply pass.

    Success rate is applied / (applied + failed) in percent and is ``None`` when
    no target reached a terminal outcome. Duration runs from queue to finish.
    """
    applied = counts.get(TargetStatus.APPLIED, 0)
    failed = counts.get(TargetStatus.FAILED, 0)
    attempted = applied + failed

    success_rate = round(applied * 100 / attempted, 2) if attempted else None
    duration_ms = None
    if run.queued_at is not None and run.finished_at is not None:
        duration_ms = int((as_utc(run.finished_at) - as_utc(run.queued_at)).total_seconds() * 1000)

    alert = None
    if success_rate is not None and success_rate < alert_below_percent:
        alert = LOW_SUCCESS_RATE
    return RunMetrics(
        run_id=run.id,
        status=run.status,
        applied=applied,
        failed=failed,
        duration_ms=duration_ms,
        success_rate=success_rate,
        alert=alert,
    )


def record_run_metrics(run: RuleRun, counts: dict[str, int], *, alert_below_percent: float) -> RunMetrics:
    metrics = compute_run_metrics(run, counts, alert_below_percent=alert_below_percent)
    log_event(worker_logger, "rules.apply.metrics", **metrics.__dict__)
    if metrics.alert:
        log_event(
            worker_logger,
            "rules.apply.low_success_rate",
            level=logging.WARNING,
            run_id=run.id,
            success_rate=metrics.success_rate,
            threshold=alert_below_percent,
        )
    return metrics
