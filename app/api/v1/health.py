from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db

router = APIRouter(tags=["health"])

VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str = Field(..., description='`"ok"` when the check passed.')
    version: str = Field(..., description="Deployed application version.")


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness check",
    description="Returns `200 OK` whenever the server process is alive.",
    response_description="Server is alive and accepting requests.",
)
async def health_check() -> HealthResponse:
    return HealthResponse(status="ok", version=VERSION)


@router.get(
    "/health/ready",
    response_model=HealthResponse,
    summary="Readiness check",
    description=(
        "Runs `SELECT 1` against the checkout database. Returns `503` while the "
        "database is unreachable."
    ),
    response_description="Server can reach its database.",
    responses={503: {"description": "Database unreachable."}},
)
async def readiness_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    try:
        await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        raise HTTPException(status_code=503, detail="Database unavailable")
    return HealthResponse(status="ok", version=VERSION)
