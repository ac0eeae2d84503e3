import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

_EXAMPLE_BOOK_ID = "3fa85f64-5717-4562-b3fc-2c963f66afa6"
_EXAMPLE_CHECKOUT_ID = "8a1bc234-9876-4def-b3fc-1a2b3c4d5e6f"
_EXAMPLE_USER_ID = "1b2c3d4e-5f6a-7b8c-9d0e-1f2a3b4c5d6e"

_EXAMPLE_CHECKOUT = {
    "checkout_id": _EXAMPLE_CHECKOUT_ID,
    "checked_out_by": _EXAMPLE_USER_ID,
    "checked_out_at": "2024-01-20T09:00:00Z",
    "returned_at": None,
    "book": {
        "id": _EXAMPLE_BOOK_ID,
        "title": "Dune",
        "author": "Frank Herbert",
        "isbn": "978-0441013593",
    },
}


class CheckoutBookResponse(BaseModel):
    id: uuid.UUID = Field(..., validation_alias="book_id", description="UUID of the book.")
    title: str = Field(..., description="Book title.")
    author: str = Field(..., description="Primary author.")
    isbn: str = Field(..., description="ISBN-10 or ISBN-13; empty when unknown.")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class CheckoutResponse(BaseModel):
    checkout_id: uuid.UUID = Field(..., description="Unique checkout identifier (UUID v4).")
    checked_out_by: uuid.UUID = Field(
        ...,
        validation_alias="borrower_id",
        description="UUID of the user who borrowed the book.",
    )
    checked_out_at: datetime = Field(
        ..., description="UTC timestamp when the book was checked out."
    )
    returned_at: datetime | None = Field(
        None,
        description="UTC timestamp when the book was returned. `null` while still checked out.",
    )
    book: CheckoutBookResponse = Field(..., description="The borrowed book.")

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        json_schema_extra={"example": _EXAMPLE_CHECKOUT},
    )


class CheckoutListResponse(BaseModel):
    items: list[CheckoutResponse] = Field(..., description="Checkouts in display order.")

    model_config = ConfigDict(json_schema_extra={"example": {"items": [_EXAMPLE_CHECKOUT]}})


class CheckoutCreatedResponse(BaseModel):
    checkout_id: uuid.UUID = Field(..., description="Identifier of the new checkout.")

    model_config = ConfigDict(json_schema_extra={"example": {"checkout_id": _EXAMPLE_CHECKOUT_ID}})


class CheckoutReturnedResponse(BaseModel):
    checkout_id: uuid.UUID = Field(..., description="Identifier of the closed checkout.")
    returned_at: datetime = Field(..., description="UTC timestamp recorded as the return time.")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"checkout_id": _EXAMPLE_CHECKOUT_ID, "returned_at": "2024-01-27T17:30:00Z"}
        }
    )
