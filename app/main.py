import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse

from app.api.v1.checkouts import router as checkouts_router
from app.api.v1.health import router as health_router
from app.core.config import settings
from app.core.errors import (
    ConflictError,
    FatalOperationError,
    NotFoundError,
    RetryableConflictError,
)
from app.core.logging import setup_logging

logger = logging.getLogger(__name__)

_TAG_METADATA: list[dict[str, Any]] = [
    {
        "name": "health",
        "description": "Server liveness probe. No authentication required.",
    },
    {
        "name": "checkouts",
        "description": (
            "Check-out and return workflows plus per-book history.\n\n"
            "- Any authenticated user may borrow a book that is not checked out.\n"
            "- A checkout can only be returned by the user who borrowed it, citing "
            "the current checkout id.\n"
            "- **Librarians** and **Admins** may list every active checkout.\n\n"
            "> **Business rule:** a book has **at most one active checkout** at a time. "
            "Attempting to borrow a checked-out book returns `409 Conflict`."
        ),
    },
]

_APP_DESCRIPTION = """\
Checkout service of the **Library Management System**, built with FastAPI and PostgreSQL.

## Authentication

Every checkout endpoint requires a **Bearer JWT** issued by the library's auth service:

```
Authorization: Bearer <token>
```

## Errors

| Status | Meaning |
|--------|---------|
| `404` | The book does not exist, or it has no active checkout to return |
| `409` | Not permitted in the book's current state |
| `503` | Kept colliding with concurrent updates: retry after `Retry-After` seconds |
| `500` | Internal error |
"""


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    yield


app = FastAPI(
    title="Library Checkout Service",
    description=_APP_DESCRIPTION,
    version="0.1.0",
    openapi_tags=_TAG_METADATA,
    license_info={"name": "MIT"},
    lifespan=lifespan,
)

# CORS: explicit origins + optional regex for dynamic URLs (e.g. deploy previews)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_origin_regex=settings.cors_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(health_router)
app.include_router(checkouts_router)


# ---------------------------------------------------------------------------
# Checkout errors → HTTP
# ---------------------------------------------------------------------------


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": exc.message})


@app.exception_handler(RetryableConflictError)
async def retryable_conflict_handler(
    request: Request, exc: RetryableConflictError
) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"detail": "Temporarily unavailable, please retry"},
        headers={"Retry-After": str(settings.RETRY_AFTER_SECONDS)},
    )


@app.exception_handler(FatalOperationError)
async def fatal_operation_handler(request: Request, exc: FatalOperationError) -> JSONResponse:
    logger.error("Fatal checkout failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# ---------------------------------------------------------------------------
# Custom OpenAPI schema: injects BearerAuth security scheme so the
# "Authorize" button works correctly in Swagger UI and ReDoc.
# ---------------------------------------------------------------------------


def _custom_openapi() -> dict[str, Any]:
    if app.openapi_schema:
        return app.openapi_schema  # type: ignore[return-value]

    schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        tags=app.openapi_tags,
        license_info=app.license_info,
        routes=app.routes,
    )

    schema.setdefault("components", {}).setdefault("securitySchemes", {})["BearerAuth"] = {
        "type": "http",
        "scheme": "bearer",
        "bearerFormat": "JWT",
        "description": "JWT access token whose `sub` claim is the user's UUID.",
    }

    app.openapi_schema = schema  # type: ignore[assignment]
    return schema  # type: ignore[return-value]


app.openapi = _custom_openapi  # type: ignore[method-assign]
