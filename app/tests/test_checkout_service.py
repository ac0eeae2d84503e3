"""Checkout coordinator tests against the in-memory store (no DB required)."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import ConflictError, FatalOperationError, NotFoundError
from app.repositories.checkout import (
    CheckoutBook,
    InMemoryCheckoutRepository,
    _InMemoryCheckoutTransaction,
)
from app.services.checkout import (
    create_checkout,
    find_unreturned_all,
    find_unreturned_by_borrower,
    history_for_book,
    update_returned,
)

T0 = datetime(2024, 1, 20, 10, 0, tzinfo=timezone.utc)


def _at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def _add_book(repo: InMemoryCheckoutRepository, title: str = "Another Book") -> CheckoutBook:
    b = CheckoutBook(book_id=uuid.uuid4(), title=title, author="Test Author", isbn="")
    repo.add_book(b)
    return b


def _active_for(repo: InMemoryCheckoutRepository, book_id: uuid.UUID) -> list:
    return [r for r in repo.active_records() if r.book_id == book_id]


# ---------------------------------------------------------------------------
# create_checkout
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_checkout_records_active_row(repo, book) -> None:
    borrower = uuid.uuid4()

    checkout_id = await create_checkout(repo, book_id=book.book_id, borrower_id=borrower, now=T0)

    [active] = repo.active_records()
    assert active.checkout_id == checkout_id
    assert active.book_id == book.book_id
    assert active.borrower_id == borrower
    assert active.checked_out_at == T0
    assert repo.returned_records() == []


@pytest.mark.asyncio
async def test_create_checkout_generates_fresh_ids(repo) -> None:
    b1, b2 = _add_book(repo), _add_book(repo)
    borrower = uuid.uuid4()

    id1 = await create_checkout(repo, book_id=b1.book_id, borrower_id=borrower, now=T0)
    id2 = await create_checkout(repo, book_id=b2.book_id, borrower_id=borrower, now=T0)

    assert id1 != id2


@pytest.mark.asyncio
async def test_create_checkout_unknown_book(repo) -> None:
    with pytest.raises(NotFoundError):
        await create_checkout(repo, book_id=uuid.uuid4(), borrower_id=uuid.uuid4(), now=T0)
    assert repo.active_records() == []


@pytest.mark.asyncio
async def test_second_checkout_of_lent_book_conflicts(repo, book) -> None:
    """U1 borrows at 10:00, U2 is refused at 10:01, U1 returns at 11:00."""
    u1, u2 = uuid.uuid4(), uuid.uuid4()

    checkout_id = await create_checkout(repo, book_id=book.book_id, borrower_id=u1, now=_at(0))

    with pytest.raises(ConflictError) as exc_info:
        await create_checkout(repo, book_id=book.book_id, borrower_id=u2, now=_at(1))
    assert "already checked out" in exc_info.value.message.lower()

    await update_returned(
        repo, checkout_id=checkout_id, book_id=book.book_id, borrower_id=u1, now=_at(60)
    )
    assert _active_for(repo, book.book_id) == []


@pytest.mark.asyncio
async def test_same_borrower_cannot_check_out_twice(repo, book) -> None:
    borrower = uuid.uuid4()
    await create_checkout(repo, book_id=book.book_id, borrower_id=borrower, now=T0)

    with pytest.raises(ConflictError):
        await create_checkout(repo, book_id=book.book_id, borrower_id=borrower, now=_at(1))
    assert len(repo.active_records()) == 1


@pytest.mark.asyncio
async def test_failed_insert_is_fatal(repo, book, monkeypatch) -> None:
    async def _insert_nothing(self, record):
        return 0

    monkeypatch.setattr(_InMemoryCheckoutTransaction, "insert_active", _insert_nothing)

    with pytest.raises(FatalOperationError):
        await create_checkout(repo, book_id=book.book_id, borrower_id=uuid.uuid4(), now=T0)
    assert repo.active_records() == []


# ---------------------------------------------------------------------------
# update_returned
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_round_trip_moves_checkout_to_history(repo, book) -> None:
    borrower = uuid.uuid4()
    t1, t2 = _at(0), _at(90)
    checkout_id = await create_checkout(repo, book_id=book.book_id, borrower_id=borrower, now=t1)

    await update_returned(
        repo, checkout_id=checkout_id, book_id=book.book_id, borrower_id=borrower, now=t2
    )

    assert _active_for(repo, book.book_id) == []
    [returned] = repo.returned_records()
    assert returned.checkout_id == checkout_id
    assert returned.book_id == book.book_id
    assert returned.borrower_id == borrower
    assert returned.checked_out_at == t1
    assert returned.returned_at == t2


@pytest.mark.asyncio
async def test_returning_twice_records_one_history_row(repo, book) -> None:
    borrower = uuid.uuid4()
    checkout_id = await create_checkout(repo, book_id=book.book_id, borrower_id=borrower, now=T0)
    await update_returned(
        repo, checkout_id=checkout_id, book_id=book.book_id, borrower_id=borrower, now=_at(5)
    )

    with pytest.raises((NotFoundError, ConflictError)):
        await update_returned(
            repo, checkout_id=checkout_id, book_id=book.book_id, borrower_id=borrower, now=_at(6)
        )
    assert len(repo.returned_records()) == 1


@pytest.mark.asyncio
async def test_return_by_another_borrower_conflicts(repo, book) -> None:
    owner, other = uuid.uuid4(), uuid.uuid4()
    checkout_id = await create_checkout(repo, book_id=book.book_id, borrower_id=owner, now=T0)

    with pytest.raises(ConflictError) as exc_info:
        await update_returned(
            repo, checkout_id=checkout_id, book_id=book.book_id, borrower_id=other, now=_at(5)
        )

    assert "does not match" in exc_info.value.message.lower()
    assert len(_active_for(repo, book.book_id)) == 1
    assert repo.returned_records() == []


@pytest.mark.asyncio
async def test_return_with_stale_checkout_id_conflicts(repo, book) -> None:
    borrower = uuid.uuid4()
    old_id = await create_checkout(repo, book_id=book.book_id, borrower_id=borrower, now=T0)
    await update_returned(
        repo, checkout_id=old_id, book_id=book.book_id, borrower_id=borrower, now=_at(5)
    )
    await create_checkout(repo, book_id=book.book_id, borrower_id=borrower, now=_at(10))

    with pytest.raises(ConflictError):
        await update_returned(
            repo, checkout_id=old_id, book_id=book.book_id, borrower_id=borrower, now=_at(15)
        )
    assert len(repo.returned_records()) == 1
    assert len(_active_for(repo, book.book_id)) == 1


@pytest.mark.asyncio
async def test_return_without_active_checkout_not_found(repo, book) -> None:
    with pytest.raises(NotFoundError):
        await update_returned(
            repo,
            checkout_id=uuid.uuid4(),
            book_id=book.book_id,
            borrower_id=uuid.uuid4(),
            now=T0,
        )


@pytest.mark.asyncio
async def test_return_unknown_book_not_found(repo) -> None:
    with pytest.raises(NotFoundError):
        await update_returned(
            repo,
            checkout_id=uuid.uuid4(),
            book_id=uuid.uuid4(),
            borrower_id=uuid.uuid4(),
            now=T0,
        )


@pytest.mark.asyncio
async def test_failed_delete_rolls_back_history_insert(repo, book, monkeypatch) -> None:
    borrower = uuid.uuid4()
    checkout_id = await create_checkout(repo, book_id=book.book_id, borrower_id=borrower, now=T0)

    async def _delete_nothing(self, checkout_id):
        return 0

    monkeypatch.setattr(_InMemoryCheckoutTransaction, "delete_active", _delete_nothing)

    with pytest.raises(FatalOperationError):
        await update_returned(
            repo, checkout_id=checkout_id, book_id=book.book_id, borrower_id=borrower, now=_at(5)
        )

    # The archived copy must not survive the rollback
    assert repo.returned_records() == []
    assert len(_active_for(repo, book.book_id)) == 1


@pytest.mark.asyncio
async def test_book_can_be_lent_again_after_return(repo, book) -> None:
    u1, u2 = uuid.uuid4(), uuid.uuid4()
    first = await create_checkout(repo, book_id=book.book_id, borrower_id=u1, now=T0)
    await update_returned(
        repo, checkout_id=first, book_id=book.book_id, borrower_id=u1, now=_at(5)
    )

    second = await create_checkout(repo, book_id=book.book_id, borrower_id=u2, now=_at(10))

    [active] = _active_for(repo, book.book_id)
    assert active.checkout_id == second
    assert active.borrower_id == u2


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_checkouts_have_one_winner(repo, book, monkeypatch) -> None:
    original = _InMemoryCheckoutTransaction.get_active

    async def _slow_get_active(self, book_id):
        # Yield to the event loop between the check and the insert
        await asyncio.sleep(0)
        return await original(self, book_id)

    monkeypatch.setattr(_InMemoryCheckoutTransaction, "get_active", _slow_get_active)

    results = await asyncio.gather(
        *(
            create_checkout(repo, book_id=book.book_id, borrower_id=uuid.uuid4(), now=T0)
            for _ in range(10)
        ),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, uuid.UUID)]
    losers = [r for r in results if not isinstance(r, uuid.UUID)]
    assert len(winners) == 1
    assert all(isinstance(e, ConflictError) for e in losers)
    [active] = _active_for(repo, book.book_id)
    assert active.checkout_id == winners[0]


@pytest.mark.asyncio
async def test_concurrent_returns_archive_once(repo, book) -> None:
    borrower = uuid.uuid4()
    checkout_id = await create_checkout(repo, book_id=book.book_id, borrower_id=borrower, now=T0)

    results = await asyncio.gather(
        *(
            update_returned(
                repo,
                checkout_id=checkout_id,
                book_id=book.book_id,
                borrower_id=borrower,
                now=_at(i),
            )
            for i in range(1, 6)
        ),
        return_exceptions=True,
    )

    assert sum(r is None for r in results) == 1
    assert all(isinstance(r, NotFoundError) for r in results if r is not None)
    assert len(repo.returned_records()) == 1


@pytest.mark.asyncio
async def test_checkouts_of_different_books_do_not_block(repo) -> None:
    books = [_add_book(repo, title=f"Book {i}") for i in range(5)]

    ids = await asyncio.gather(
        *(create_checkout(repo, book_id=b.book_id, borrower_id=uuid.uuid4(), now=T0) for b in books)
    )

    assert len(set(ids)) == 5
    assert len(repo.active_records()) == 5

@pytest.mark.asyncio
async def test_book_locks_released_after_transactions(repo, book, monkeypatch) -> None:
    for _ in range(100):
        with pytest.raises(NotFoundError):
            await create_checkout(repo, book_id=uuid.uuid4(), borrower_id=uuid.uuid4(), now=T0)
    assert repo._locks == {}

    original = _InMemoryCheckoutTransaction.get_active

    async def _slow_get_active(self, book_id):
        await asyncio.sleep(0)
        return await original(self, book_id)

    monkeypatch.setattr(_InMemoryCheckoutTransaction, "get_active", _slow_get_active)
    await asyncio.gather(
        *(
            create_checkout(repo, book_id=book.book_id, borrower_id=uuid.uuid4(), now=T0)
            for _ in range(5)
        ),
        return_exceptions=True,
    )

    assert len(_active_for(repo, book.book_id)) == 1
    assert repo._locks == {}
    assert repo._lock_users == {}


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unreturned_by_borrower_oldest_first(repo) -> None:
    borrower, other = uuid.uuid4(), uuid.uuid4()
    late, early, middle, foreign = (_add_book(repo) for _ in range(4))
    await create_checkout(repo, book_id=late.book_id, borrower_id=borrower, now=_at(30))
    await create_checkout(repo, book_id=early.book_id, borrower_id=borrower, now=_at(0))
    await create_checkout(repo, book_id=middle.book_id, borrower_id=borrower, now=_at(15))
    await create_checkout(repo, book_id=foreign.book_id, borrower_id=other, now=_at(5))

    checkouts = await find_unreturned_by_borrower(repo, borrower)

    assert [c.book.book_id for c in checkouts] == [early.book_id, middle.book_id, late.book_id]
    assert all(c.returned_at is None for c in checkouts)
    assert all(c.borrower_id == borrower for c in checkouts)


@pytest.mark.asyncio
async def test_unreturned_all_oldest_first_and_excludes_returned(repo) -> None:
    u1, u2 = uuid.uuid4(), uuid.uuid4()
    b1, b2, b3 = _add_book(repo, "One"), _add_book(repo, "Two"), _add_book(repo, "Three")
    await create_checkout(repo, book_id=b1.book_id, borrower_id=u1, now=_at(20))
    await create_checkout(repo, book_id=b2.book_id, borrower_id=u2, now=_at(10))
    returned = await create_checkout(repo, book_id=b3.book_id, borrower_id=u1, now=_at(0))
    await update_returned(
        repo, checkout_id=returned, book_id=b3.book_id, borrower_id=u1, now=_at(30)
    )

    checkouts = await find_unreturned_all(repo)

    assert [c.book.title for c in checkouts] == ["Two", "One"]


@pytest.mark.asyncio
async def test_history_puts_active_first_then_newest_return(repo, book) -> None:
    u1, u2, u3 = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()

    first = await create_checkout(repo, book_id=book.book_id, borrower_id=u1, now=_at(0))
    await update_returned(repo, checkout_id=first, book_id=book.book_id, borrower_id=u1, now=_at(10))
    second = await create_checkout(repo, book_id=book.book_id, borrower_id=u2, now=_at(20))
    await update_returned(
        repo, checkout_id=second, book_id=book.book_id, borrower_id=u2, now=_at(30)
    )
    current = await create_checkout(repo, book_id=book.book_id, borrower_id=u3, now=_at(40))

    history = await history_for_book(repo, book.book_id)

    assert [c.checkout_id for c in history] == [current, second, first]
    assert history[0].returned_at is None
    assert history[1].returned_at == _at(30)
    assert history[2].returned_at == _at(10)
    assert all(c.book == book for c in history)


@pytest.mark.asyncio
async def test_history_of_available_book_has_no_active_entry(repo, book) -> None:
    borrower = uuid.uuid4()
    checkout_id = await create_checkout(repo, book_id=book.book_id, borrower_id=borrower, now=T0)
    await update_returned(
        repo, checkout_id=checkout_id, book_id=book.book_id, borrower_id=borrower, now=_at(5)
    )

    history = await history_for_book(repo, book.book_id)

    assert len(history) == 1
    assert history[0].returned_at == _at(5)


@pytest.mark.asyncio
async def test_history_of_unknown_book_is_empty(repo) -> None:
    assert await history_for_book(repo, uuid.uuid4()) == []


class _ReturnAfterFirstRead:
    """Commits a pending return right after the first history read."""

    def __init__(self, inner: InMemoryCheckoutRepository, **return_args) -> None:
        self._inner = inner
        self._return_args = return_args
        self._pending = True

    async def _after_read(self, result):
        if self._pending:
            self._pending = False
            await update_returned(self._inner, **self._return_args)
        return result

    async def find_unreturned_by_book(self, book_id):
        return await self._after_read(await self._inner.find_unreturned_by_book(book_id))

    async def find_returned_by_book(self, book_id):
        return await self._after_read(await self._inner.find_returned_by_book(book_id))


@pytest.mark.asyncio
async def test_history_keeps_loan_returned_between_reads(repo, book) -> None:
    borrower = uuid.uuid4()
    checkout_id = await create_checkout(repo, book_id=book.book_id, borrower_id=borrower, now=T0)
    racing = _ReturnAfterFirstRead(
        repo, checkout_id=checkout_id, book_id=book.book_id, borrower_id=borrower, now=_at(5)
    )

    history = await history_for_book(racing, book.book_id)

    [entry] = history
    assert entry.checkout_id == checkout_id
    assert entry.returned_at == _at(5)
