"""Token handling tests: no DB required."""

import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import JWTError

from app.auth.jwt import create_access_token, decode_token
from app.main import app


@pytest_asyncio.fixture
async def anon_client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def test_token_round_trip() -> None:
    user_id = str(uuid.uuid4())
    payload = decode_token(create_access_token({"sub": user_id}))
    assert payload["sub"] == user_id
    assert "exp" in payload


def test_expired_token_rejected() -> None:
    token = create_access_token({"sub": str(uuid.uuid4())}, expires_delta=timedelta(minutes=-5))
    with pytest.raises(JWTError):
        decode_token(token)


@pytest.mark.asyncio
async def test_expired_token_is_401(anon_client: AsyncClient) -> None:
    token = create_access_token({"sub": str(uuid.uuid4())}, expires_delta=timedelta(minutes=-5))
    resp = await anon_client.get(
        "/api/v1/users/me/checkouts", headers={"Authorization": f"Bearer {token}"}
    )
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_token_without_subject_is_401(anon_client: AsyncClient) -> None:
    token = create_access_token({"role": "MEMBER"})
    resp = await anon_client.get(
        "/api/v1/users/me/checkouts", headers={"Authorization": f"Bearer {token}"}
    )
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_token_with_malformed_subject_is_401(anon_client: AsyncClient) -> None:
    token = create_access_token({"sub": "not-a-uuid"})
    resp = await anon_client.get(
        "/api/v1/users/me/checkouts", headers={"Authorization": f"Bearer {token}"}
    )
    assert resp.status_code == 401
