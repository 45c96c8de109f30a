"""Prometheus metrics definitions for the control plane and edge proxy."""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Histogram Buckets (optimized by latency category)
# =============================================================================

# MEDIUM: proxied requests, Docker API calls (5ms ~ 60s)
_BUCKETS_MEDIUM = (
    0.005, 0.01, 0.02, 0.04, 0.09,
    0.18, 0.36, 0.73, 1.5, 3,
    6.2, 12.7, 26, 53,
)  # 14 buckets

# SLOW: provisioning workflows, image pulls, deploys (1s ~ 30min)
_BUCKETS_SLOW = (
    1, 2, 5, 10, 20,
    40, 80, 160, 320, 640,
    1280, 1800,
)  # 12 buckets

# =============================================================================
# Workflow Metrics
# =============================================================================

WORKFLOWS_TOTAL = Counter(
    "cloudbay_workflows_total",
    "Background workflows by kind and outcome",
    ["kind", "outcome"],  # kind: provision|restore|redeploy, outcome: succeeded|failed
)

WORKFLOW_DURATION = Histogram(
    "cloudbay_workflow_duration_seconds",
    "Background workflow duration",
    ["kind"],
    buckets=_BUCKETS_SLOW,
)

WORKFLOWS_RUNNING = Gauge(
    "cloudbay_workflows_running",
    "Background workflows currently in progress",
    multiprocess_mode="livesum",
)

# =============================================================================
# Driver Metrics
# =============================================================================

DRIVER_OPERATION_DURATION = Histogram(
    "cloudbay_driver_operation_duration_seconds",
    "Substrate operation duration",
    ["mode", "operation", "status"],  # status: success|error
    buckets=_BUCKETS_MEDIUM,
)

# =============================================================================
# Edge Proxy Metrics
# =============================================================================

PROXY_REQUESTS_TOTAL = Counter(
    "cloudbay_proxy_requests_total",
    "Edge proxy requests by route kind and outcome",
    ["route", "outcome"],  # route: frontend|api|resource|unresolved, outcome: forwarded|not_found|bad_gateway|bad_request
)

PROXY_REQUEST_DURATION = Histogram(
    "cloudbay_proxy_request_duration_seconds",
    "Edge proxy request duration (headers received from upstream)",
    ["route"],
    buckets=_BUCKETS_MEDIUM,
)

# =============================================================================
# Terminal Metrics
# =============================================================================

TERMINAL_SESSIONS_ACTIVE = Gauge(
    "cloudbay_terminal_sessions_active",
    "Attached terminal shells",
    multiprocess_mode="livesum",
)
