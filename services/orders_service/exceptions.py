"""Order lifecycle errors and the failure reasons recorded on orders."""

import uuid
from typing import Optional

from libs.common.errors import ServiceError


class OrderError(ServiceError):
    code = "OrderError"


class OrderNotFound(OrderError):
    code = "OrderNotFound"
    status_code = 404

    def __init__(self, order_id: uuid.UUID):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class SiteUnsupported(OrderError):
    code = "SiteUnsupported"
    status_code = 422


class SiteUnavailable(OrderError):
    code = "SiteUnavailable"
    status_code = 409


class OrderNotCancellable(OrderError):
    code = "OrderNotCancellable"
    status_code = 409


class OrderNotCompleted(OrderError):
    code = "OrderNotCompleted"
    status_code = 409


class StaleTransition(OrderError):
    """The stored status was not the expected one; someone else advanced it.

    Internal concurrency signal. Callers treat it as a no-op.
    """

    code = "StaleTransition"
    status_code = 409

    def __init__(self, order_id: uuid.UUID, expected, actual):
        self.order_id = order_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Order {order_id} is {getattr(actual, 'value', actual)}, "
            f"expected {getattr(expected, 'value', expected)}"
        )


class IllegalTransition(OrderError):
    code = "IllegalTransition"
    status_code = 500


# ---------------------------------------------------------------------------
# Terminal failure reasons (stored as Order.error_code / Order.error)
# ---------------------------------------------------------------------------


class OrderFailure(Exception):
    """Why an order ended FAILED. ``code`` goes to Order.error_code."""

    code = "failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.code.replace("_", " ")
        super().__init__(self.message)


class ProviderTaskFailed(OrderFailure):
    code = "provider_task_failed"


class PollTimeout(OrderFailure):
    code = "poll_timeout"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "poll timeout")


class SubmitRetriesExhausted(OrderFailure):
    code = "submit_retries_exhausted"


class OrderCancelled(OrderFailure):
    code = "cancelled"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "cancelled by user")
