"""
Prometheus metrics for the game lifecycle service.

Metrics exposed:
- Lifecycle job run counters and duration histograms
- Job lock contention counter
- Event upsert and finalization counters
- Settlement outcome counters and treasury fee total
- Provider (api-sports) success/failure counters
- Health check status gauges
- Circuit breaker state gauge
"""
from prometheus_client import Counter, Gauge, Histogram

# Lifecycle job metrics
lifecycle_job_runs_total = Counter(
    "lifecycle_job_runs_total",
    "Total lifecycle job runs",
    ["job", "outcome"]  # outcome: ok, errors, skipped, failed
)

lifecycle_job_duration_seconds = Histogram(
    "lifecycle_job_duration_seconds",
    "Lifecycle job duration in seconds",
    ["job"],
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600)
)

job_lock_contention_total = Counter(
    "job_lock_contention_total",
    "Job runs skipped because another worker holds the lease",
    ["job"]
)

# Event metrics
events_upserted_total = Counter(
    "events_upserted_total",
    "Total events written by discovery/sync/backfill",
    ["league"]
)

events_finalized_total = Counter(
    "events_finalized_total",
    "Total events transitioned into FINAL or CANCELED",
    ["league", "state"]
)

# Settlement metrics
settlements_processed_total = Counter(
    "settlements_processed_total",
    "Settlement queue items processed",
    ["outcome"]  # done, skipped, failed, already_processed
)

treasury_fees_collected_total = Counter(
    "treasury_fees_collected_total",
    "Platform fees written to the treasury ledger"
)

# Provider metrics
provider_requests_success_total = Counter(
    "provider_requests_success_total",
    "Total successful sports data provider requests",
    ["league"]
)

provider_requests_failure_total = Counter(
    "provider_requests_failure_total",
    "Total failed sports data provider requests",
    ["league", "error_type"]
)

# Health metrics
health_check_status = Gauge(
    "health_check_status",
    "Lifecycle health check status (0=ok, 1=warning, 2=critical)",
    ["check"]
)

health_check_count = Gauge(
    "health_check_count",
    "Number of offending rows found by a lifecycle health check",
    ["check"]
)

# Circuit Breaker Metrics
circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["service"]
)

_HEALTH_STATUS_VALUES = {"ok": 0, "warning": 1, "critical": 2}
_BREAKER_STATE_VALUES = {"closed": 0, "open": 1, "half-open": 2, "half_open": 2}


def record_job_run(job: str, outcome: str, duration_seconds: float) -> None:
    """Record one finished (or skipped) job run."""
    lifecycle_job_runs_total.labels(job=job, outcome=outcome).inc()
    if outcome == "skipped":
        job_lock_contention_total.labels(job=job).inc()
    else:
        lifecycle_job_duration_seconds.labels(job=job).observe(duration_seconds)


def record_events_upserted(league: str, count: int) -> None:
    """Record events written for a league."""
    if count > 0:
        events_upserted_total.labels(league=league).inc(count)


def record_event_finalized(league: str, state: str) -> None:
    """Record an event transition into a terminal state."""
    events_finalized_total.labels(league=league, state=state).inc()


def record_settlement(outcome: str, fee: float = 0.0) -> None:
    """Record a settlement outcome and any fee collected."""
    settlements_processed_total.labels(outcome=outcome).inc()
    if fee > 0:
        treasury_fees_collected_total.inc(fee)


def record_provider_request_success(league: str) -> None:
    """Record a successful provider request."""
    provider_requests_success_total.labels(league=league).inc()


def record_provider_request_failure(league: str, error_type: str = "unknown") -> None:
    """Record a failed provider request."""
    provider_requests_failure_total.labels(league=league, error_type=error_type).inc()


def update_health_metrics(checks: list) -> None:
    """
    Update health gauges from a list of check results.

    Args:
        checks: HealthCheckResult-like objects with name, status and count
    """
    for check in checks:
        health_check_status.labels(check=check.name).set(_HEALTH_STATUS_VALUES.get(check.status, 0))
        health_check_count.labels(check=check.name).set(check.count)


def update_breaker_state(service: str, state: str) -> None:
    """Mirror a pybreaker state name into the circuit breaker gauge."""
    circuit_breaker_state.labels(service=service).set(_BREAKER_STATE_VALUES.get(state, 0))
