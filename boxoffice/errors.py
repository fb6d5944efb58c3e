"""Domain error codes for the settlement engine.

Capacity and validation outcomes are returned as structured results; the
errors here are for the API edge and for conditions a caller cannot recover
from by changing the cart.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    INVALID_CART = "INVALID_CART"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"


@dataclass(frozen=True)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class OrderNotFoundError(DomainError):
    """Raised when an order is not found."""

    def __init__(self, order_id: str) -> None:
        super().__init__(
            code=ErrorCode.ORDER_NOT_FOUND,
            message="Order not found",
        )
        self.order_id = order_id


class EventNotFoundError(DomainError):
    """Raised when an event is not found."""

    def __init__(self, event_id: str) -> None:
        super().__init__(
            code=ErrorCode.EVENT_NOT_FOUND,
            message="Event not found",
        )
        self.event_id = event_id


class InvalidCartError(DomainError):
    """Raised when a cart payload is malformed (not when it is sold out)."""

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.INVALID_CART, message=message)


class PermissionDeniedError(DomainError):
    def __init__(self, message: str = "Not allowed") -> None:
        super().__init__(code=ErrorCode.PERMISSION_DENIED, message=message)


class NotAuthenticatedError(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.NOT_AUTHENTICATED,
            message="Login required",
        )
