"""Bursar - FastAPI Entry Point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from bursar import __version__
from bursar.config import settings
from bursar.database import engine, Base, async_session
from bursar.middleware.error_capture import ErrorCaptureMiddleware
from bursar.api import (
    document_requests,
    exam_approvals,
    grants,
    ledgers,
    online_transactions,
    overdue,
    payments,
    promissory_notes,
)
from bursar.seed_catalog import seed_catalog_data
from bursar.services.exceptions import BursarError

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup (dev only); in prod use Alembic migrations."""
    if settings.environment == "development":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with async_session() as db:
            await seed_catalog_data(db)
    yield


app = FastAPI(
    title="Bursar API",
    description="Student ledgers, payments and approval workflows for the school bursar",
    version=__version__,
    lifespan=lifespan,
)

app.state.limiter = online_transactions.limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(BursarError)
async def bursar_error_handler(request: Request, exc: BursarError) -> JSONResponse:
    logger.info(
        "%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


# ── Security headers middleware ──────────────────────────────────
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if settings.environment != "development":
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        return response


# Error capture middleware (outermost, catches everything)
app.add_middleware(ErrorCaptureMiddleware)

# Security headers
app.add_middleware(SecurityHeadersMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Provider-Token"],
)

# Routers
app.include_router(ledgers.router, prefix="/api/ledgers", tags=["Ledgers"])
app.include_router(grants.router, prefix="/api/grants", tags=["Grants"])
app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])
app.include_router(online_transactions.router, prefix="/api/online-transactions", tags=["Online Transactions"])
app.include_router(overdue.router, prefix="/api/overdue", tags=["Overdue"])
app.include_router(document_requests.router, prefix="/api/document-requests", tags=["Document Requests"])
app.include_router(exam_approvals.router, prefix="/api/exam-approvals", tags=["Exam Approvals"])
app.include_router(promissory_notes.router, prefix="/api/promissory-notes", tags=["Promissory Notes"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "bursar-api", "version": __version__}
