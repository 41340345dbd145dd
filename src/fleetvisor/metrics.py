"""Prometheus metrics for the supervisor."""

from prometheus_client import Counter, Gauge, Histogram

UNIT_TRANSITIONS = Counter(
    "fleetvisor_unit_transitions_total",
    "Unit state transitions",
    ["state"],
)

UNITS = Gauge(
    "fleetvisor_units",
    "Units currently in each state",
    ["state"],
)

HEALTH_CHECKS = Counter(
    "fleetvisor_health_checks_total",
    "Health check outcomes",
    ["outcome"],
)

RECONCILE_OPERATIONS = Counter(
    "fleetvisor_reconcile_operations_total",
    "Start/stop operations issued by the reconciler",
    ["operation"],
)

REQUEST_COUNT = Counter(
    "fleetvisor_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_DURATION = Histogram(
    "fleetvisor_http_request_duration_seconds",
    "HTTP request duration",
    ["method", "endpoint"],
)
