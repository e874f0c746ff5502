"""Exception types raised by the payment services.

Routers translate these into HTTP responses; anything else is treated as an
unexpected server error.
"""


class PaymentError(Exception):
    """Base class for payment service failures."""


class SignatureVerificationError(PaymentError):
    """An HMAC signature did not match; nothing was changed."""


class NotFoundError(PaymentError):
    pass


class PaymentNotFoundError(NotFoundError):
    pass


class ReceiptNotFoundError(NotFoundError):
    pass


class PaymentConflictError(PaymentError):
    """The order is already settled with a different gateway payment."""


class RefundNotAllowedError(PaymentError):
    pass


class InvalidPayloadError(PaymentError):
    pass


class GatewayError(PaymentError):
    """The payment gateway could not be reached or rejected the request."""

    def __init__(self, message: str, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class OrderPersistenceError(PaymentError):
    """The gateway order exists but the local record could not be stored."""

    def __init__(self, message: str, gateway_order_id: str):
        super().__init__(message)
        self.gateway_order_id = gateway_order_id
