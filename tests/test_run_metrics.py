from datetime import timedelta

from pricerun.core.clock import utc_now
from pricerun.models.rule_run import RuleRun
from pricerun.services.run_metrics import LOW_SUCCESS_RATE, compute_run_metrics, record_run_metrics


def _finished_run(status: str = "APPLIED", *, seconds: float = 1.5) -> RuleRun:
    queued_at = utc_now()
    return RuleRun(id="run-1", status=status, queued_at=queued_at, finished_at=queued_at + timedelta(seconds=seconds))


def test_metrics_report_duration_and_success_rate():
    metrics = compute_run_metrics(_finished_run(), {"APPLIED": 97, "FAILED": 3}, alert_below_percent=97.0)

    assert metrics.duration_ms == 1500
    assert metrics.success_rate == 97.0
    assert metrics.applied == 97
    assert metrics.failed == 3
    assert metrics.alert is None


def test_low_success_rate_raises_alert():
    metrics = record_run_metrics(_finished_run("PARTIAL"), {"APPLIED": 24, "FAILED": 1}, alert_below_percent=97.0)

    assert metrics.success_rate == 96.0
    assert metrics.alert == LOW_SUCCESS_RATE


def test_metrics_without_outcomes_have_no_rate():
    run = RuleRun(id="run-2", status="APPLIED", queued_at=None, finished_at=utc_now())

    metrics = compute_run_metrics(run, {"APPLIED": 0, "FAILED": 0}, alert_below_percent=97.0)

    assert metrics.success_rate is None
    assert metrics.duration_ms is None
    assert metrics.alert is None
