"""Prometheus metrics for the engine's periodic jobs.

Metrics exported:
- lifeos_reminders_fired_total: reminders dispatched and marked sent, by channel
- lifeos_push_deliveries_total: per-endpoint push attempts, by outcome
- lifeos_calendar_sync_runs_total: per-account sync runs, by status
- lifeos_calendar_mirror_mutations_total: mirror inserts/updates/deletes
- lifeos_job_tick_seconds: wall time of each job tick
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

reminders_fired_total = Counter(
    "lifeos_reminders_fired_total",
    "Total number of reminders dispatched and marked sent",
    labelnames=["channel"],
)

push_deliveries_total = Counter(
    "lifeos_push_deliveries_total",
    "Total number of push delivery attempts per device endpoint",
    labelnames=["outcome"],
)

calendar_sync_runs_total = Counter(
    "lifeos_calendar_sync_runs_total",
    "Total number of per-account calendar sync runs",
    labelnames=["status"],
)

calendar_mirror_mutations_total = Counter(
    "lifeos_calendar_mirror_mutations_total",
    "Total number of local mirror rows inserted, updated or deleted by sync",
    labelnames=["operation"],
)

job_tick_seconds = Histogram(
    "lifeos_job_tick_seconds",
    "Wall time of one periodic job tick in seconds",
    labelnames=["job", "status"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)


def record_reminder_fired(channel: str) -> None:
    reminders_fired_total.labels(channel=channel).inc()


def record_push_delivery(outcome: str) -> None:
    """Record one endpoint delivery; outcome is "delivered", "failed" or "gone"."""
    push_deliveries_total.labels(outcome=outcome).inc()


def record_sync_run(status: str) -> None:
    calendar_sync_runs_total.labels(status=status).inc()


def record_mirror_mutations(inserted: int = 0, updated: int = 0, deleted: int = 0) -> None:
    for operation, count in (("insert", inserted), ("update", updated), ("delete", deleted)):
        if count:
            calendar_mirror_mutations_total.labels(operation=operation).inc(count)


def record_tick(job: str, status: str, seconds: float) -> None:
    job_tick_seconds.labels(job=job, status=status).observe(seconds)


def serve_metrics(port: int) -> None:
    """Expose the default registry on ``http://0.0.0.0:{port}/metrics``."""
    start_http_server(port)
