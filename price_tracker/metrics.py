"""Prometheus metrics for the price tracker queue."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("price_tracker", "Price tracker application info")
app_info.info({"version": "0.1.0", "name": "tiered-price-tracker"})

# Queue metrics
queue_entries_enqueued_total = Counter(
    "queue_entries_enqueued_total",
    "Total number of queue entries created by the populator",
    ["tier"],
)

queue_entries_claimed_total = Counter(
    "queue_entries_claimed_total",
    "Total number of queue entries claimed by processor runs",
)

queue_outcomes_total = Counter(
    "queue_outcomes_total",
    "Total number of resolved queue entries",
    ["status"],
)

queue_depth = Gauge(
    "queue_depth",
    "Number of queue entries by status",
    ["status"],
)

listings_deactivated_total = Counter(
    "listings_deactivated_total",
    "Total number of listings deactivated after repeated failures",
)

scrape_duration_seconds = Histogram(
    "scrape_duration_seconds",
    "Time spent scraping a listing",
    ["store"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

# Janitor metrics
janitor_rows_deleted_total = Counter(
    "janitor_rows_deleted_total",
    "Total number of rows removed by the janitor",
    ["table"],
)

# Alert metrics
watchlist_notifications_total = Counter(
    "watchlist_notifications_total",
    "Total number of watchlist price-drop notifications",
    ["status"],
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Total number of component runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last component run",
    ["job_type"],
)


def record_scheduler_run(job_type: str, success: bool):
    """Record a component run (populate, process_queue, cleanup, alerts)."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())


def record_scrape(store: str, duration: float):
    """Record the duration of one scrape attempt."""
    scrape_duration_seconds.labels(store=store).observe(duration)


def record_outcome(status: str):
    """Record a queue entry reaching a terminal status."""
    queue_outcomes_total.labels(status=status).inc()


def update_queue_depth(by_status: dict[str, int]):
    """Update the queue_depth gauge with current counts."""
    for status, count in by_status.items():
        queue_depth.labels(status=status).set(count)
