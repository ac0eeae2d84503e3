"""Checkout engine error taxonomy.

Every error raised by the checkout coordinator derives from ``CheckoutError``
and is propagated to the caller unchanged. The HTTP mapping lives in
``app.main``:

- ``NotFoundError``          → 404
- ``ConflictError``          → 409
- ``RetryableConflictError`` → 503 with ``Retry-After`` (after retries run out)
- ``FatalOperationError``    → 500
"""


class CheckoutError(Exception):
    """Base class for checkout / return failures."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(CheckoutError):
    """The book does not exist, or it has no active checkout to return."""


class ConflictError(CheckoutError):
    """The command is not permitted given the book's current state."""


class RetryableConflictError(CheckoutError):
    """The store aborted the transaction (serialization failure, deadlock, timeout).

    Not a business rejection: re-running the whole command is safe.
    """


class FatalOperationError(CheckoutError):
    """A write that must affect exactly one row affected none.

    Signals a logic or race bug. Never retry.
    """
