from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "clubpay_http_requests_total",
    "HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "clubpay_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "clubpay_http_request_errors_total",
    "HTTP requests that ended in a server error",
    ["method", "path", "status"],
)

WEBHOOK_EVENTS = Counter(
    "clubpay_webhook_events_total",
    "Inbound provider webhook events by outcome",
    ["provider", "resource_type", "outcome"],
)
SUBSCRIPTION_TRANSITIONS = Counter(
    "clubpay_subscription_transitions_total",
    "Subscription status transitions",
    ["from_status", "to_status"],
)
