"""
Custom exceptions for the cart synchronization service.

Every exception carries a ``user_message`` that is safe to show to the end
user; the exception text itself may hold diagnostic detail for the logs.
"""
from typing import Optional


class CartException(Exception):
    """Base exception for cart operations"""
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, user_message: Optional[str] = None):
        if user_message is not None:
            self.user_message = user_message
        super().__init__(message or self.user_message)


class ValidationError(CartException):
    """Raised when validation fails"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message, user_message=message)


class CatalogItemNotFoundError(CartException):
    """Raised when no catalog document exists for an item id"""
    user_message = "This product is no longer available."

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Catalog item not found: {item_id}")


class PreconditionError(CartException):
    """Checkout or cart precondition not met; nothing was written"""


class IdentityRequiredError(PreconditionError):
    user_message = "Please log in to continue."


class EmptyCartError(PreconditionError):
    user_message = "Your cart is empty."


class NoPendingCheckoutError(PreconditionError):
    user_message = "There is no checkout in progress."


class CategoryNotFoundError(CartException):
    user_message = "Category not found."

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Category not found: {name}")


class DocumentStoreError(CartException):
    """Raised when the remote document store fails"""
    user_message = "Service temporarily unavailable. Please try again."


class CartPersistenceError(CartException):
    """Raised when the cart document could not be written"""
    user_message = "Failed to update your cart. Please try again."


class CheckoutPersistenceError(CartException):
    """Raised when the order record could not be written"""
    user_message = "Failed to place your order. Please try again."


class OrderVerificationError(CartException):
    """The order write returned but reading it back failed"""
    user_message = "We could not confirm your order was recorded. Please try again."

    def __init__(self, order_id: str, reason: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} could not be verified: {reason}")


class OrderNotFoundError(CartException):
    user_message = "Order not found."

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class PaymentGatewayError(CartException):
    """Raised when the payment collaborator rejects a checkout session"""
    user_message = "Failed to create checkout session"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        # gateway error payloads are meant for the customer
        super().__init__(message, user_message=message)


class LogisticsError(CartException):
    def __init__(self, message: str):
        super().__init__(message, user_message=message)


class ShipmentNotFoundError(LogisticsError):
    def __init__(self, tracking_number: str):
        self.tracking_number = tracking_number
        super().__init__("Shipment not found")
