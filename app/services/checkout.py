import logging
import uuid
from datetime import datetime

from app.core.errors import ConflictError, FatalOperationError, NotFoundError
from app.repositories.checkout import (
    ActiveCheckoutRecord,
    CheckoutRepository,
    CheckoutRow,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def create_checkout(
    repo: CheckoutRepository,
    *,
    book_id: uuid.UUID,
    borrower_id: uuid.UUID,
    now: datetime,
) -> uuid.UUID:
    """
    Lend a book to *borrower_id*.

    The existence check, the "not already lent" check and the insert run in
    one transaction. With the SQL repository that transaction is SERIALIZABLE,
    so two concurrent checkouts of the same book cannot both see the book as
    available: one of them is aborted and surfaces as RetryableConflictError
    (or ConflictError if the unique index on book_id trips first).
    """
    checkout_id = uuid.uuid4()

    async with repo.transaction(book_id) as tx:
        if not await tx.book_exists(book_id):
            raise NotFoundError(f"Book {book_id} not found")
        if await tx.get_active(book_id) is not None:
            logger.info("Checkout of book %s rejected: already checked out", book_id)
            raise ConflictError("Book already checked out")

        inserted = await tx.insert_active(
            ActiveCheckoutRecord(
                checkout_id=checkout_id,
                book_id=book_id,
                borrower_id=borrower_id,
                checked_out_at=now,
            )
        )
        if inserted < 1:
            logger.error("Checkout of book %s inserted no rows", book_id)
            raise FatalOperationError(f"Checkout of book {book_id} inserted no rows")

    logger.info("Book %s checked out by %s (checkout %s)", book_id, borrower_id, checkout_id)
    return checkout_id


async def update_returned(
    repo: CheckoutRepository,
    *,
    checkout_id: uuid.UUID,
    book_id: uuid.UUID,
    borrower_id: uuid.UUID,
    now: datetime,
) -> None:
    """
    Close an active checkout.

    The active row is copied into the history store and then deleted, in the
    same transaction. If either write misses, the whole transaction rolls back
    so the history never records a return that left the book lent.
    """
    async with repo.transaction(book_id) as tx:
        if not await tx.book_exists(book_id):
            raise NotFoundError(f"Book {book_id} not found")

        active = await tx.get_active(book_id)
        if active is None:
            raise NotFoundError(f"Book {book_id} has no active checkout")
        if active.checkout_id != checkout_id or active.borrower_id != borrower_id:
            logger.info("Return of checkout %s rejected: identity mismatch", checkout_id)
            raise ConflictError("Checkout does not match requested identity")

        if await tx.archive_active(checkout_id, now) < 1:
            logger.error("Return of checkout %s archived no rows", checkout_id)
            raise FatalOperationError(f"Return of checkout {checkout_id} archived no rows")
        if await tx.delete_active(checkout_id) < 1:
            logger.error("Return of checkout %s deleted no rows", checkout_id)
            raise FatalOperationError(f"Return of checkout {checkout_id} deleted no rows")

    logger.info("Book %s returned by %s (checkout %s)", book_id, borrower_id, checkout_id)


# ---------------------------------------------------------------------------
# Queries: plain reads, no transactional guard
# ---------------------------------------------------------------------------


async def find_unreturned_all(repo: CheckoutRepository) -> list[CheckoutRow]:
    """All books currently lent, oldest checkout first."""
    return await repo.find_unreturned_all()


async def find_unreturned_by_borrower(
    repo: CheckoutRepository, borrower_id: uuid.UUID
) -> list[CheckoutRow]:
    return await repo.find_unreturned_by_borrower(borrower_id)


async def history_for_book(repo: CheckoutRepository, book_id: uuid.UUID) -> list[CheckoutRow]:
    """
    Checkout history of one book.

    The current checkout, if any, comes first so callers see the book's status
    before its past loans; returned checkouts follow, most recent return first.

    The active row is read before the archive. A return that commits between
    the two reads then shows up in the archive, and the stale active entry is
    dropped instead of listing the same loan twice.
    """
    active = await repo.find_unreturned_by_book(book_id)
    history = await repo.find_returned_by_book(book_id)
    if active is not None and all(r.checkout_id != active.checkout_id for r in history):
        history.insert(0, active)
    return history
