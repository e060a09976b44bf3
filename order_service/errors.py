# errors.py


class OrderError(Exception):
    """Base for every error the order core reports to its callers."""

    status_code = 500
    default_reason = "order error"

    def __init__(self, reason: str = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class InvalidTransition(OrderError):
    status_code = 409
    default_reason = "transition not allowed from current status"


class Unauthorized(OrderError):
    status_code = 403
    default_reason = "actor may not perform this action"


class AssignmentConflict(OrderError):
    """Raised to the losing driver; the caller should re-query available orders."""

    status_code = 409
    default_reason = "order no longer available"


class NotFound(OrderError):
    status_code = 404
    default_reason = "not found"


class TransientStoreError(OrderError):
    """Persistence temporarily unavailable. Safe to retry the same request."""

    status_code = 503
    default_reason = "order store temporarily unavailable"


class PaymentRequired(OrderError):
    status_code = 402
    default_reason = "payment has not been confirmed"


class NotRateable(OrderError):
    status_code = 409
    default_reason = "only delivered orders can be rated"
