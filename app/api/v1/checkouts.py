import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from app.auth.dependencies import get_current_user, require_role
from app.core.config import settings
from app.db.session import get_checkout_repository
from app.models.user import User, UserRole
from app.repositories.checkout import CheckoutRepository, CheckoutRow
from app.schemas.checkout import (
    CheckoutCreatedResponse,
    CheckoutListResponse,
    CheckoutResponse,
    CheckoutReturnedResponse,
)
from app.services.checkout import (
    create_checkout,
    find_unreturned_all,
    find_unreturned_by_borrower,
    history_for_book,
    update_returned,
)
from app.services.retry import run_with_retry

router = APIRouter(prefix="/api/v1", tags=["checkouts"])

_AUTH_RESPONSES: dict = {
    401: {"description": "Missing, invalid, or expired Bearer token."},
}
_RETRY_RESPONSES: dict = {
    503: {
        "description": (
            "Temporarily unavailable: the transaction kept colliding with concurrent "
            "updates. Retry after the number of seconds in `Retry-After`."
        )
    },
}


def _list_response(checkouts: list[CheckoutRow]) -> CheckoutListResponse:
    return CheckoutListResponse(items=[CheckoutResponse.model_validate(c) for c in checkouts])


@router.post(
    "/books/{book_id}/checkouts",
    response_model=CheckoutCreatedResponse,
    status_code=201,
    summary="Borrow a book",
    description=(
        "Lends the book to the authenticated user.\n\n"
        "**Business rules:**\n"
        "- The book must exist, otherwise `404`.\n"
        "- The book must not be checked out already, otherwise `409 Conflict`.\n\n"
        "**Concurrency:** the check and the insert run in one SERIALIZABLE transaction. "
        "When two requests race for the same book exactly one succeeds; the other gets "
        "`409`, or `503` if the store kept aborting it.\n\n"
        "**Requires:** any authenticated user."
    ),
    response_description="Identifier of the new checkout.",
    responses={
        **_AUTH_RESPONSES,
        **_RETRY_RESPONSES,
        404: {"description": "Book not found."},
        409: {"description": "Conflict: the book is already checked out."},
        422: {"description": "Validation error: `book_id` must be a valid UUID."},
    },
)
async def checkout_endpoint(
    book_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    repo: CheckoutRepository = Depends(get_checkout_repository),
) -> CheckoutCreatedResponse:
    checkout_id = await run_with_retry(
        lambda: create_checkout(
            repo,
            book_id=book_id,
            borrower_id=current_user.id,
            now=datetime.now(tz=timezone.utc),
        ),
        attempts=settings.CHECKOUT_RETRY_ATTEMPTS,
        base_delay=settings.CHECKOUT_RETRY_BASE_DELAY,
    )
    return CheckoutCreatedResponse(checkout_id=checkout_id)


@router.put(
    "/books/{book_id}/checkouts/{checkout_id}/returned",
    response_model=CheckoutReturnedResponse,
    summary="Return a book",
    description=(
        "Closes the authenticated user's active checkout of the book and moves it to "
        "the book's history.\n\n"
        "**Business rules:**\n"
        "- The book must exist and be checked out, otherwise `404`.\n"
        "- `checkout_id` must be the book's current checkout **and** belong to the "
        "caller, otherwise `409 Conflict`.\n\n"
        "**Requires:** any authenticated user."
    ),
    response_description="The closed checkout and its return time.",
    responses={
        **_AUTH_RESPONSES,
        **_RETRY_RESPONSES,
        404: {"description": "Book not found, or the book is not checked out."},
        409: {"description": "Conflict: the checkout is not the caller's current one."},
    },
)
async def return_endpoint(
    book_id: uuid.UUID,
    checkout_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    repo: CheckoutRepository = Depends(get_checkout_repository),
) -> CheckoutReturnedResponse:
    async def _return() -> datetime:
        now = datetime.now(tz=timezone.utc)
        await update_returned(
            repo,
            checkout_id=checkout_id,
            book_id=book_id,
            borrower_id=current_user.id,
            now=now,
        )
        return now

    returned_at = await run_with_retry(
        _return,
        attempts=settings.CHECKOUT_RETRY_ATTEMPTS,
        base_delay=settings.CHECKOUT_RETRY_BASE_DELAY,
    )
    return CheckoutReturnedResponse(checkout_id=checkout_id, returned_at=returned_at)


@router.get(
    "/books/checkouts",
    response_model=CheckoutListResponse,
    dependencies=[require_role(UserRole.LIBRARIAN, UserRole.ADMIN)],
    summary="List all checked-out books",
    description=(
        "Every book currently lent, oldest checkout first.\n\n"
        "**Requires:** Librarian or Admin role."
    ),
    response_description="Active checkouts in ascending `checked_out_at` order.",
    responses={
        **_AUTH_RESPONSES,
        403: {"description": "Forbidden: Librarian or Admin role required."},
    },
)
async def list_checkouts_endpoint(
    repo: CheckoutRepository = Depends(get_checkout_repository),
) -> CheckoutListResponse:
    return _list_response(await find_unreturned_all(repo))


@router.get(
    "/users/me/checkouts",
    response_model=CheckoutListResponse,
    summary="List my checked-out books",
    description=(
        "Books the authenticated user currently has out, oldest checkout first.\n\n"
        "**Requires:** any authenticated user."
    ),
    response_description="The caller's active checkouts.",
    responses={**_AUTH_RESPONSES},
)
async def my_checkouts_endpoint(
    current_user: User = Depends(get_current_user),
    repo: CheckoutRepository = Depends(get_checkout_repository),
) -> CheckoutListResponse:
    return _list_response(await find_unreturned_by_borrower(repo, current_user.id))


@router.get(
    "/books/{book_id}/checkout-history",
    response_model=CheckoutListResponse,
    summary="Checkout history of a book",
    description=(
        "The book's current checkout (if any) first, followed by past checkouts "
        "ordered by `returned_at` descending.\n\n"
        "An unknown book yields an empty list.\n\n"
        "**Requires:** any authenticated user."
    ),
    response_description="Current checkout followed by returned checkouts.",
    responses={**_AUTH_RESPONSES},
)
async def checkout_history_endpoint(
    book_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    repo: CheckoutRepository = Depends(get_checkout_repository),
) -> CheckoutListResponse:
    return _list_response(await history_for_book(repo, book_id))
