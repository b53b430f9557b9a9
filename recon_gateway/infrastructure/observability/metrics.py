"""Prometheus metrics for import runs, record outcomes, matching and source API performance"""

from prometheus_client import Counter, Histogram, Gauge

# Import run metrics
import_run_counter = Counter(
    "recon_import_runs_total",
    "Import runs finished",
    ["status"],  # SUCCESS | PARTIAL | FAILED
)

record_outcome_counter = Counter(
    "recon_records_total",
    "External records processed",
    ["outcome"],  # matched | created | grouped | skipped_duplicate | failed
)

runs_in_progress_gauge = Gauge(
    "recon_runs_in_progress",
    "Import runs currently executing",
)

# Matching metrics
match_score_histogram = Histogram(
    "recon_match_score",
    "Score of accepted matches",
    buckets=[0.7, 0.75, 0.8, 0.85, 0.9, 0.95, 1.0],
)

group_status_counter = Counter(
    "recon_installment_groups_total",
    "Installment groups saved",
    ["status"],  # OPEN | COMPLETE | INCONSISTENT | ABANDONED
)

# Source API metrics
source_fetch_latency_histogram = Histogram(
    "source_fetch_latency_seconds",
    "Source API page fetch time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

source_fetch_failures_counter = Counter(
    "source_fetch_failures_total",
    "Failed source API calls",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_run(status: str, outcomes: dict) -> None:
    """Record a finished run and its per-outcome record totals"""
    import_run_counter.labels(status=status).inc()
    for outcome, count in outcomes.items():
        if count:
            record_outcome_counter.labels(outcome=outcome).inc(count)
