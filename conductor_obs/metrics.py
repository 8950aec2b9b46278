"""
Prometheus Metrics Registration.

Counters and histograms for the orchestration core.
"""

from prometheus_client import Counter, Histogram

# ============================================================================
# COUNTERS
# ============================================================================

protocol_requests_total = Counter(
    "conductor_protocol_requests_total",
    "Protocol calls issued to tool endpoints",
    ["method", "status"],  # success, failure
)

discovery_probes_total = Counter(
    "conductor_discovery_probes_total",
    "Capability probes sent to endpoints",
    ["status"],  # success, error, timeout, cached
)

query_executions_total = Counter(
    "conductor_query_executions_total",
    "Query executions by terminal status",
    ["status"],
)

collector_runs_total = Counter(
    "conductor_collector_runs_total",
    "Collector process runs",
    ["collector", "status"],
)

# ============================================================================
# HISTOGRAMS
# ============================================================================

protocol_request_duration = Histogram(
    "conductor_protocol_request_duration_seconds",
    "Protocol call duration including retries",
    ["method"],
    buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

query_execution_duration = Histogram(
    "conductor_query_execution_duration_seconds",
    "Query execution duration",
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

collector_run_duration = Histogram(
    "conductor_collector_run_duration_seconds",
    "Collector process run duration",
    ["collector"],
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0),
)
