from prometheus_client import Counter, Gauge

TRANSITIONS_APPLIED = Counter(
    "order_transitions_applied_total",
    "Order status transitions committed",
    ["status"]
)

TRANSITIONS_REJECTED = Counter(
    "order_transitions_rejected_total",
    "Order status transitions refused",
    ["reason"]
)

ASSIGNMENT_CONFLICTS = Counter(
    "order_assignment_conflicts_total",
    "Driver accept attempts that lost the assignment race"
)

POOL_BROADCASTS = Counter(
    "order_pool_broadcasts_total",
    "Ready orders offered to the driver pool",
    ["outcome"]
)

EVENTS_DELIVERED = Counter(
    "order_events_delivered_total",
    "Event pushes delivered to live sessions",
    ["event_type"]
)

ACTIVE_SESSIONS = Gauge(
    "order_active_sessions",
    "Currently registered live sessions"
)
