"""
Fact Engine - FastAPI Application

Main entry point for the Fact Engine backend.

Architecture:
- Upstream state → FactProducer → FactPayload → hash → immutable snapshot
- New hash for an entity → drift event in the audit trail
- Snapshot hash + audience + verbosity → cached explanation
- Recomputes, explanations and nightly refreshes run as queued jobs
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from . import __version__
from .database import init_db
from .errors import FactEngineError, FactsNotReadyError, GeneratorRateLimitedError
from .logging_config import configure_logging
from .routers import audit_router, facts_router, jobs_router, scheduler_router


logger = logging.getLogger(__name__)

HTTP_ERROR_CODES = {
    400: "VALIDATION",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    422: "VALIDATION",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and initialize database on startup."""
    configure_logging()
    init_db()
    logger.info(f"Fact Engine {__version__} started")
    yield


def error_body(code: str, message: str, **extra) -> dict:
    error = {"code": code, "message": message}
    error.update(extra)
    return {"error": error}


# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Fact Engine",
    description="""
    Fact Engine - Deterministic Loan Facts and Cached Explanations

    ## Modules
    - **TRADING**: loan trading readiness score and band
    - **ESG**: KPI measurement and evidence verification status
    - **SERVICING**: covenant compliance evaluation
    - **PORTFOLIO**: tenant-wide risk distributions

    ## Key Principles
    - Facts are computed deterministically and stored as immutable snapshots
    - A snapshot is identified by the hash of its canonical content
    - Explanations are generated once per (fact hash, audience, verbosity)
    - Every recompute, drift and explanation is written to the audit trail
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(facts_router)
app.include_router(audit_router)
app.include_router(jobs_router)
app.include_router(scheduler_router)


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(FactEngineError)
async def fact_engine_error_handler(request: Request, exc: FactEngineError):
    headers = {}
    extra = {}

    if isinstance(exc, GeneratorRateLimitedError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
        extra["retryAfterSeconds"] = exc.retry_after_seconds
    elif isinstance(exc, FactsNotReadyError) and exc.job_id:
        extra["jobId"] = exc.job_id

    if exc.status_code >= 500 and exc.code == FactEngineError.code:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=500, content=error_body("INTERNAL", "Internal server error"))

    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code, exc.message, **extra),
        headers=headers or None,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    code = HTTP_ERROR_CODES.get(exc.status_code, "INTERNAL")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
    return JSONResponse(
        status_code=422,
        content=error_body("VALIDATION", f"Invalid request: {fields}"),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content=error_body("INTERNAL", "Internal server error"))


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Fact Engine",
        "version": __version__,
        "description": "Deterministic loan facts, drift detection and cached explanations",
        "docs": "/docs",
        "modules": ["TRADING", "ESG", "SERVICING", "PORTFOLIO"],
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


# For running with: python -m factengine.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
