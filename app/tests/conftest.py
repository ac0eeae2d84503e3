import contextlib
import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from app.auth.dependencies import get_current_user
from app.core.config import settings
from app.db.base import Base
from app.db.session import get_checkout_repository
from app.main import app
from app.repositories.checkout import CheckoutBook, InMemoryCheckoutRepository


@pytest.fixture
def repo() -> InMemoryCheckoutRepository:
    return InMemoryCheckoutRepository()


@pytest.fixture
def book(repo: InMemoryCheckoutRepository) -> CheckoutBook:
    b = CheckoutBook(
        book_id=uuid.uuid4(), title="Dune", author="Frank Herbert", isbn="9780441013593"
    )
    repo.add_book(b)
    return b


@pytest.fixture
def client_as():
    """Factory for an HTTP client authenticated as *user* (anonymous when None)."""

    @contextlib.asynccontextmanager
    async def _client_as(user, repo):
        async def _override_user():
            return user

        app.dependency_overrides[get_checkout_repository] = lambda: repo
        if user is not None:
            app.dependency_overrides[get_current_user] = _override_user
        try:
            async with AsyncClient(
                transport=ASGITransport(app=app), base_url="http://test"
            ) as ac:
                yield ac
        finally:
            app.dependency_overrides.pop(get_current_user, None)
            app.dependency_overrides.pop(get_checkout_repository, None)

    return _client_as


@pytest_asyncio.fixture
async def pg_engine():
    """Throwaway engine on DATABASE_URL; skips the test if Postgres is absent."""
    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        await engine.dispose()
        pytest.skip(f"Database not available: {e}")

    try:
        yield engine
    finally:
        await engine.dispose()
