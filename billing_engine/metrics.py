from prometheus_client import Counter, Histogram

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)
BILLING_JOB_RUNS = Counter(
    "billing_job_runs_total",
    "Billing job runs by outcome",
    ["job", "status"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def record_billing_job(job_name: str, status: str, duration: float) -> None:
    BILLING_JOB_RUNS.labels(job=job_name, status=status).inc()
    observe_job(job_name, status, duration)
