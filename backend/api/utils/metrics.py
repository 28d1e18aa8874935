"""
Prometheus-style metrics for the pledge workflow.

Provides simple counters for submissions, payments, executions and audit exports.
"""

from typing import Dict
from datetime import datetime

# Simple in-memory counters (reset on restart)
_METRICS: Dict[str, int] = {
    "access_requests_total": 0,
    "access_reviews_total": 0,
    "pledges_submitted_total": 0,
    "pledges_cancelled_total": 0,
    "payments_failed_total": 0,
    "payment_retries_total": 0,
    "executions_completed_total": 0,
    "executions_failed_total": 0,
    "execution_conflicts_total": 0,  # Lost races (AlreadyExecuting)
    "admin_overrides_total": 0,
    "audit_exports_total": 0,
}

_HELP: Dict[str, str] = {
    "access_requests_total": "Total number of brokerage access requests submitted",
    "access_reviews_total": "Total number of access requests reviewed",
    "pledges_submitted_total": "Total number of pledges created ready for execution",
    "pledges_cancelled_total": "Total number of pledges cancelled by their owner",
    "payments_failed_total": "Total number of failed convenience fee payments",
    "payment_retries_total": "Total number of payment retries",
    "executions_completed_total": "Total number of execution legs completed",
    "executions_failed_total": "Total number of execution legs failed",
    "execution_conflicts_total": "Total number of execution attempts that lost a race",
    "admin_overrides_total": "Total number of admin auto-sell overrides",
    "audit_exports_total": "Total number of audit CSV exports",
}

_LABELED_METRICS: Dict[str, Dict[str, int]] = {
    "pledge_rejections_total": {},  # error_code=SESSION_FULL|INVALID_QUANTITY|...
}

_START_TIME = datetime.utcnow()


def increment_metric(metric_name: str, value: int = 1):
    """Increment a metric counter."""
    if metric_name in _METRICS:
        _METRICS[metric_name] += value


def increment_counter(metric_name: str, labels: Dict[str, str] = None, value: int = 1):
    """
    Increment a counter with optional labels.

    Args:
        metric_name: Name of the metric to increment
        labels: Optional dictionary of label key-value pairs
        value: Amount to increment by (default 1)
    """
    if metric_name in _METRICS:
        _METRICS[metric_name] += value
    elif metric_name in _LABELED_METRICS:
        if labels:
            label_key = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
            if label_key not in _LABELED_METRICS[metric_name]:
                _LABELED_METRICS[metric_name][label_key] = 0
            _LABELED_METRICS[metric_name][label_key] += value


def get_metrics() -> Dict[str, int]:
    """Get current metric values."""
    return _METRICS.copy()


def get_metrics_text() -> str:
    """
    Get metrics in Prometheus text format.

    Returns:
        str: Prometheus-formatted metrics
    """
    uptime_seconds = int((datetime.utcnow() - _START_TIME).total_seconds())
    lines = []

    for name, value in _METRICS.items():
        lines.extend([
            f"# HELP {name} {_HELP[name]}",
            f"# TYPE {name} counter",
            f"{name} {value}",
            "",
        ])

    lines.extend([
        "# HELP pledge_rejections_total Pledge submissions rejected by error code",
        "# TYPE pledge_rejections_total counter",
    ])
    if _LABELED_METRICS["pledge_rejections_total"]:
        for label_str, count in _LABELED_METRICS["pledge_rejections_total"].items():
            lines.append(f"pledge_rejections_total{{{label_str}}} {count}")
    else:
        lines.append("pledge_rejections_total 0")

    lines.extend([
        "",
        "# HELP api_uptime_seconds API uptime in seconds",
        "# TYPE api_uptime_seconds gauge",
        f"api_uptime_seconds {uptime_seconds}",
        "",
    ])

    return "\n".join(lines)
