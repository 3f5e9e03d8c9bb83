"""Prometheus metrics definitions."""

from prometheus_client import Counter, Gauge, Histogram

# Job metrics
JOBS_PROCESSED = Counter(
    "taskreminder_jobs_processed_total",
    "Total number of job executions by outcome",
    ["job_class", "queue", "status"],
)

JOB_DURATION = Histogram(
    "taskreminder_job_duration_seconds",
    "Job execution duration in seconds",
    ["job_class", "queue"],
    buckets=(0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0),
)

JOB_RETRIES = Counter(
    "taskreminder_job_retries_total",
    "Total number of jobs re-queued after a failure",
    ["job_class", "queue"],
)

JOB_MEMORY_YIELDS = Counter(
    "taskreminder_job_memory_yields_total",
    "Heavy jobs released back to the queue under memory pressure",
    ["job_class"],
)

# Reminder metrics
REMINDER_SCANS = Counter(
    "taskreminder_reminder_scans_total",
    "Total number of due-reminder scans",
)

NOTIFICATIONS_DISPATCHED = Counter(
    "taskreminder_notifications_dispatched_total",
    "Delivery jobs enqueued by the reminder scan",
    ["channel"],
)

NOTIFICATIONS_SENT = Counter(
    "taskreminder_notifications_sent_total",
    "Delivery attempts by channel and outcome",
    ["channel", "status"],
)

# Queue metrics
QUEUE_PENDING = Gauge(
    "taskreminder_queue_pending",
    "Jobs waiting in a queue (ready and delayed)",
    ["queue"],
)

QUEUE_PROCESSING = Gauge(
    "taskreminder_queue_processing",
    "Jobs currently reserved by a worker",
    ["queue"],
)

STUCK_JOBS = Gauge(
    "taskreminder_stuck_jobs",
    "Jobs in processing state longer than the stuck threshold",
)

QUEUE_HEALTHY = Gauge(
    "taskreminder_queue_healthy",
    "1 when the last health check passed, 0 otherwise",
)
