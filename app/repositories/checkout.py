"""Storage access for the two checkout stores.

``active_checkouts`` holds at most one row per lent book; ``returned_checkouts``
is the append-only archive of completed loans. The stores carry no consistency
logic of their own: the one-active-checkout-per-book rule is enforced by the
coordinator (``app.services.checkout``) running check-then-act inside
``CheckoutRepository.transaction()``.

Two implementations satisfy the ``CheckoutRepository`` protocol:

- ``SqlCheckoutRepository``: PostgreSQL via async SQLAlchemy; every
  transaction runs at SERIALIZABLE isolation and storage aborts are reported as
  ``RetryableConflictError``.
- ``InMemoryCheckoutRepository``: dict-backed, for tests and local tooling; no
  serializable isolation, so each transaction holds a per-book exclusive lock
  for the whole check+mutate and stages writes until commit.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy import delete, insert, literal, select
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.core.errors import ConflictError, RetryableConflictError
from app.models.book import Book
from app.models.checkout import ActiveCheckout, ReturnedCheckout

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected, lock_not_available, query_canceled
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01", "55P03", "57014"})
_UNIQUE_VIOLATION = "23505"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CheckoutBook:
    book_id: uuid.UUID
    title: str
    author: str
    isbn: str


@dataclass(frozen=True)
class ActiveCheckoutRecord:
    checkout_id: uuid.UUID
    book_id: uuid.UUID
    borrower_id: uuid.UUID
    checked_out_at: datetime


@dataclass(frozen=True)
class ReturnedCheckoutRecord:
    checkout_id: uuid.UUID
    book_id: uuid.UUID
    borrower_id: uuid.UUID
    checked_out_at: datetime
    returned_at: datetime


@dataclass(frozen=True)
class CheckoutRow:
    """An active or returned checkout joined with its book descriptor."""

    checkout_id: uuid.UUID
    borrower_id: uuid.UUID
    checked_out_at: datetime
    returned_at: datetime | None
    book: CheckoutBook


# ---------------------------------------------------------------------------
# Capability interface
# ---------------------------------------------------------------------------


class CheckoutTransaction(Protocol):
    async def book_exists(self, book_id: uuid.UUID) -> bool: ...

    async def get_active(self, book_id: uuid.UUID) -> ActiveCheckoutRecord | None: ...

    async def insert_active(self, record: ActiveCheckoutRecord) -> int: ...

    async def archive_active(self, checkout_id: uuid.UUID, returned_at: datetime) -> int: ...

    async def delete_active(self, checkout_id: uuid.UUID) -> int: ...


class CheckoutRepository(Protocol):
    def transaction(
        self, book_id: uuid.UUID
    ) -> AbstractAsyncContextManager[CheckoutTransaction]:
        """Open a write transaction scoped to *book_id*.

        Commits when the block exits normally and rolls back when it raises.
        """
        ...

    async def find_unreturned_all(self) -> list[CheckoutRow]: ...

    async def find_unreturned_by_borrower(self, borrower_id: uuid.UUID) -> list[CheckoutRow]: ...

    async def find_unreturned_by_book(self, book_id: uuid.UUID) -> CheckoutRow | None: ...

    async def find_returned_by_book(self, book_id: uuid.UUID) -> list[CheckoutRow]: ...


# ---------------------------------------------------------------------------
# SQL implementation
# ---------------------------------------------------------------------------


def _sqlstate(exc: DBAPIError) -> str | None:
    # The asyncpg adapter exposes the code on the wrapped error; the raw
    # asyncpg exception is chained as its cause.
    for candidate in (exc.orig, getattr(exc.orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def is_retryable(exc: BaseException) -> bool:
    """True when *exc* is a storage abort that a fresh attempt may get past."""
    if isinstance(exc, PoolTimeoutError):
        return True
    if isinstance(exc, DBAPIError):
        return _sqlstate(exc) in RETRYABLE_SQLSTATES
    return False


_ACTIVE = ActiveCheckout.__table__
_RETURNED = ReturnedCheckout.__table__


class _SqlCheckoutTransaction:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def book_exists(self, book_id: uuid.UUID) -> bool:
        found = await self._session.scalar(select(Book.id).where(Book.id == book_id))
        return found is not None

    async def get_active(self, book_id: uuid.UUID) -> ActiveCheckoutRecord | None:
        row = (
            await self._session.execute(
                select(
                    _ACTIVE.c.checkout_id,
                    _ACTIVE.c.book_id,
                    _ACTIVE.c.borrower_id,
                    _ACTIVE.c.checked_out_at,
                ).where(_ACTIVE.c.book_id == book_id)
            )
        ).one_or_none()
        if row is None:
            return None
        return ActiveCheckoutRecord(
            checkout_id=row.checkout_id,
            book_id=row.book_id,
            borrower_id=row.borrower_id,
            checked_out_at=row.checked_out_at,
        )

    async def insert_active(self, record: ActiveCheckoutRecord) -> int:
        try:
            result = await self._session.execute(
                insert(_ACTIVE).values(
                    checkout_id=record.checkout_id,
                    book_id=record.book_id,
                    borrower_id=record.borrower_id,
                    checked_out_at=record.checked_out_at,
                )
            )
        except IntegrityError as exc:
            # A concurrent checkout committed first and the unique index on
            # book_id caught this one.
            if _sqlstate(exc) == _UNIQUE_VIOLATION:
                raise ConflictError("Book already checked out") from exc
            raise
        return result.rowcount

    async def archive_active(self, checkout_id: uuid.UUID, returned_at: datetime) -> int:
        stmt = insert(_RETURNED).from_select(
            ["checkout_id", "book_id", "borrower_id", "checked_out_at", "returned_at"],
            select(
                _ACTIVE.c.checkout_id,
                _ACTIVE.c.book_id,
                _ACTIVE.c.borrower_id,
                _ACTIVE.c.checked_out_at,
                literal(returned_at, TIMESTAMP(timezone=True)),
            ).where(_ACTIVE.c.checkout_id == checkout_id),
        )
        try:
            result = await self._session.execute(stmt)
        except IntegrityError as exc:
            # A concurrent return of the same checkout archived it first.
            if _sqlstate(exc) == _UNIQUE_VIOLATION:
                raise ConflictError("Checkout already returned") from exc
            raise
        return result.rowcount

    async def delete_active(self, checkout_id: uuid.UUID) -> int:
        result = await self._session.execute(
            delete(_ACTIVE).where(_ACTIVE.c.checkout_id == checkout_id)
        )
        return result.rowcount


class SqlCheckoutRepository:
    """Checkout stores backed by PostgreSQL."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)
        self._serializable_sessions = async_sessionmaker(
            engine.execution_options(isolation_level="SERIALIZABLE"),
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def transaction(self, book_id: uuid.UUID) -> AsyncIterator[CheckoutTransaction]:
        try:
            async with self._serializable_sessions() as session, session.begin():
                yield _SqlCheckoutTransaction(session)
        except (DBAPIError, PoolTimeoutError) as exc:
            if not is_retryable(exc):
                raise
            logger.warning("Checkout transaction for book %s aborted by the store: %s", book_id, exc)
            raise RetryableConflictError(
                "Transaction aborted by a concurrent update; retry the request"
            ) from exc

    @staticmethod
    def _active_rows_stmt():
        return (
            select(
                _ACTIVE.c.checkout_id,
                _ACTIVE.c.borrower_id,
                _ACTIVE.c.checked_out_at,
                Book.id.label("book_id"),
                Book.title,
                Book.author,
                Book.isbn,
            )
            .join(Book, Book.id == _ACTIVE.c.book_id)
            .order_by(_ACTIVE.c.checked_out_at.asc())
        )

    @staticmethod
    def _to_row(row, returned_at: datetime | None = None) -> CheckoutRow:
        return CheckoutRow(
            checkout_id=row.checkout_id,
            borrower_id=row.borrower_id,
            checked_out_at=row.checked_out_at,
            returned_at=returned_at,
            book=CheckoutBook(
                book_id=row.book_id, title=row.title, author=row.author, isbn=row.isbn
            ),
        )

    async def find_unreturned_all(self) -> list[CheckoutRow]:
        async with self._sessions() as session:
            rows = (await session.execute(self._active_rows_stmt())).all()
        return [self._to_row(r) for r in rows]

    async def find_unreturned_by_borrower(self, borrower_id: uuid.UUID) -> list[CheckoutRow]:
        stmt = self._active_rows_stmt().where(_ACTIVE.c.borrower_id == borrower_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()
        return [self._to_row(r) for r in rows]

    async def find_unreturned_by_book(self, book_id: uuid.UUID) -> CheckoutRow | None:
        stmt = self._active_rows_stmt().where(_ACTIVE.c.book_id == book_id)
        async with self._sessions() as session:
            row = (await session.execute(stmt)).one_or_none()
        return self._to_row(row) if row is not None else None

    async def find_returned_by_book(self, book_id: uuid.UUID) -> list[CheckoutRow]:
        stmt = (
            select(
                _RETURNED.c.checkout_id,
                _RETURNED.c.borrower_id,
                _RETURNED.c.checked_out_at,
                _RETURNED.c.returned_at,
                Book.id.label("book_id"),
                Book.title,
                Book.author,
                Book.isbn,
            )
            .join(Book, Book.id == _RETURNED.c.book_id)
            .where(_RETURNED.c.book_id == book_id)
            .order_by(_RETURNED.c.returned_at.desc())
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()
        return [self._to_row(r, returned_at=r.returned_at) for r in rows]


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class _InMemoryCheckoutTransaction:
    """Reads see committed state plus this transaction's own staged writes."""

    def __init__(self, repo: "InMemoryCheckoutRepository") -> None:
        self._repo = repo
        self._inserted: dict[uuid.UUID, ActiveCheckoutRecord] = {}
        self._deleted: set[uuid.UUID] = set()
        self._archived: list[ReturnedCheckoutRecord] = []

    def _visible(self) -> dict[uuid.UUID, ActiveCheckoutRecord]:
        rows = {**self._repo._active, **self._inserted}
        return {k: r for k, r in rows.items() if r.checkout_id not in self._deleted}

    async def book_exists(self, book_id: uuid.UUID) -> bool:
        return book_id in self._repo._books

    async def get_active(self, book_id: uuid.UUID) -> ActiveCheckoutRecord | None:
        return self._visible().get(book_id)

    async def insert_active(self, record: ActiveCheckoutRecord) -> int:
        if record.book_id in self._visible():
            raise ConflictError("Book already checked out")
        self._inserted[record.book_id] = record
        return 1

    async def archive_active(self, checkout_id: uuid.UUID, returned_at: datetime) -> int:
        for r in self._visible().values():
            if r.checkout_id == checkout_id:
                self._archived.append(
                    ReturnedCheckoutRecord(
                        checkout_id=r.checkout_id,
                        book_id=r.book_id,
                        borrower_id=r.borrower_id,
                        checked_out_at=r.checked_out_at,
                        returned_at=returned_at,
                    )
                )
                return 1
        return 0

    async def delete_active(self, checkout_id: uuid.UUID) -> int:
        if any(r.checkout_id == checkout_id for r in self._visible().values()):
            self._deleted.add(checkout_id)
            return 1
        return 0

    def commit(self) -> None:
        self._repo._active = self._visible()
        self._repo._returned.extend(self._archived)


class InMemoryCheckoutRepository:
    """Checkout stores held in process memory."""

    def __init__(self, books: Iterable[CheckoutBook] = ()) -> None:
        self._books: dict[uuid.UUID, CheckoutBook] = {b.book_id: b for b in books}
        self._active: dict[uuid.UUID, ActiveCheckoutRecord] = {}
        self._returned: list[ReturnedCheckoutRecord] = []
        # Per-book locks live only while a transaction holds or waits on them
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._lock_users: dict[uuid.UUID, int] = {}

    def add_book(self, book: CheckoutBook) -> None:
        self._books[book.book_id] = book

    def active_records(self) -> list[ActiveCheckoutRecord]:
        return list(self._active.values())

    def returned_records(self) -> list[ReturnedCheckoutRecord]:
        return list(self._returned)

    @asynccontextmanager
    async def transaction(self, book_id: uuid.UUID) -> AsyncIterator[CheckoutTransaction]:
        lock = self._locks.setdefault(book_id, asyncio.Lock())
        self._lock_users[book_id] = self._lock_users.get(book_id, 0) + 1
        try:
            async with lock:
                tx = _InMemoryCheckoutTransaction(self)
                yield tx
                tx.commit()
        finally:
            self._lock_users[book_id] -= 1
            if not self._lock_users[book_id]:
                del self._lock_users[book_id]
                del self._locks[book_id]

    def _join(self, record, returned_at: datetime | None = None) -> CheckoutRow | None:
        book = self._books.get(record.book_id)
        if book is None:
            return None
        return CheckoutRow(
            checkout_id=record.checkout_id,
            borrower_id=record.borrower_id,
            checked_out_at=record.checked_out_at,
            returned_at=returned_at,
            book=book,
        )

    def _active_rows(self, records: Iterable[ActiveCheckoutRecord]) -> list[CheckoutRow]:
        rows = [row for r in records if (row := self._join(r)) is not None]
        return sorted(rows, key=lambda row: row.checked_out_at)

    async def find_unreturned_all(self) -> list[CheckoutRow]:
        return self._active_rows(self._active.values())

    async def find_unreturned_by_borrower(self, borrower_id: uuid.UUID) -> list[CheckoutRow]:
        return self._active_rows(r for r in self._active.values() if r.borrower_id == borrower_id)

    async def find_unreturned_by_book(self, book_id: uuid.UUID) -> CheckoutRow | None:
        record = self._active.get(book_id)
        return self._join(record) if record is not None else None

    async def find_returned_by_book(self, book_id: uuid.UUID) -> list[CheckoutRow]:
        rows = [
            row
            for r in self._returned
            if r.book_id == book_id and (row := self._join(r, returned_at=r.returned_at))
        ]
        return sorted(rows, key=lambda row: row.returned_at, reverse=True)
