from app.schemas.checkout import (
    CheckoutBookResponse,
    CheckoutCreatedResponse,
    CheckoutListResponse,
    CheckoutResponse,
    CheckoutReturnedResponse,
)

__all__ = [
    "CheckoutBookResponse",
    "CheckoutResponse",
    "CheckoutListResponse",
    "CheckoutCreatedResponse",
    "CheckoutReturnedResponse",
]
