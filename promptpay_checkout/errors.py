"""Error taxonomy for checkout and payment.

Every error carries a human-readable ``message`` and the HTTP status the API
layer answers with. Gateway errors also keep the upstream status and body so
the caller can see what the bank said.
"""

from typing import Any, Optional


class CheckoutError(Exception):
    status_code = 500
    default_message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"message": self.message}


class ConfigurationError(CheckoutError):
    default_message = "Service is not configured"


class Unauthenticated(CheckoutError):
    status_code = 401
    default_message = "Unauthenticated"


class Forbidden(CheckoutError):
    status_code = 403
    default_message = "Forbidden"


class CartNotFound(CheckoutError):
    status_code = 404
    default_message = "Cart not found"


class EmptyCart(CheckoutError):
    status_code = 400
    default_message = "Cart is empty"


class OrderNotFound(CheckoutError):
    status_code = 404
    default_message = "Order not found"


class VariantNotFound(CheckoutError):
    status_code = 404
    default_message = "Variant not found"


class CartItemNotFound(CheckoutError):
    status_code = 404
    default_message = "Item not found"


class InvalidAmount(CheckoutError):
    status_code = 400
    default_message = "Invalid amount"


class InvalidReference(CheckoutError):
    status_code = 400
    default_message = "Invalid reference"


class InvalidSignature(CheckoutError):
    status_code = 400
    default_message = "Invalid signature"


class GatewayError(CheckoutError):
    status_code = 502
    default_message = "Payment gateway error"

    def __init__(
        self,
        message: Optional[str] = None,
        upstream_status: Optional[int] = None,
        upstream_body: Any = None,
    ):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


class GatewayAuthError(GatewayError):
    default_message = "Payment gateway authentication failed"


class GatewayRequestError(GatewayError):
    status_code = 400
    default_message = "Payment gateway request failed"


class GatewayMaintenanceError(GatewayRequestError):
    """The gateway reported that the service is unavailable or in maintenance."""

    default_message = "Payment gateway is under maintenance"


class OutOfStock(CheckoutError):
    status_code = 400
    default_message = "Out of stock"
