from fastapi import FastAPI, APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import time
import uvicorn
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import traceback

from sqlalchemy import text

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from config import get_settings, get_cors_config, validate_environment
from logging_config import setup_logging, get_logger, set_request_context, clear_request_context
from database import init_db, dispose_db, get_engine
from reconciliation import reconciliation_router
from reconciliation.errors import ReconciliationError
from services.audit import AuditLogger, get_audit_logger
from utils.validation_errors import ValidationErrorResponse, status_for_error

settings = get_settings()

# JSON logs unless LOG_JSON is disabled
setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
)
logger = get_logger(__name__)


def _uses_database() -> bool:
    return settings.SESSION_STORE == "sql"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    logger.info("=" * 60)
    logger.info("Starting Estate Recon API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Session store: {settings.SESSION_STORE}")
    logger.info("=" * 60)

    env_status = validate_environment()
    if not env_status["valid"]:
        for error in env_status["errors"]:
            logger.error(f"Configuration Error: {error}")
        if settings.is_production:
            raise RuntimeError("Cannot start in production with invalid configuration")

    for warning in env_status.get("warnings", []):
        logger.warning(f"Configuration Warning: {warning}")

    if _uses_database():
        try:
            await init_db()
            logger.info("PostgreSQL connection established")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    logger.info("Estate Recon API started successfully")

    yield

    logger.info("Shutting down Estate Recon API...")
    if _uses_database():
        await dispose_db()


app = FastAPI(
    title=settings.API_TITLE,
    description="""
    Bank reconciliation backend for property-management tenants.

    ## Features

    ### Reconciliation (/api/reconciliation)
    - Income flow: bank deposits vs resident payments
    - Expense flow: bank withdrawals vs registered expenses
    - Bank statement CSV import and normalization
    - Auto-match with date/amount tolerances, manual overrides
    - Resumable drafts and completed sessions with traceability hash
    - Net-difference notifications
    - History index, session detail and CSV export
    - Audit trail
    """,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
)

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")


# ==================== HEALTH CHECK ENDPOINTS ====================

async def _check_session_store() -> dict:
    if not _uses_database():
        return {"status": "skipped", "type": "memory"}
    try:
        async with get_engine().begin() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "connected", "type": "postgresql"}
    except Exception as e:
        logger.error(f"Session store health check failed: {e}")
        return {"status": "disconnected", "type": "postgresql", "error": str(e)}


def _check_audit_log(audit_logger: AuditLogger) -> dict:
    writable = os.access(audit_logger.log_file, os.W_OK)
    return {"status": "writable" if writable else "read_only", "path": str(audit_logger.log_file)}


@api_router.get("/", tags=["Health"])
async def root():
    return {
        "message": "Estate Recon API",
        "status": "healthy",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@api_router.get("/health", tags=["Health"])
async def health_check(audit_logger: AuditLogger = Depends(get_audit_logger)):
    """
    Readiness of the reconciliation collaborators.

    - session_store: PostgreSQL reachability (skipped for the memory store)
    - audit_log: the JSONL audit file can be appended to
    - notifications: webhook or in-memory delivery

    Returns 503 when the store is unreachable or the audit log is read-only.
    """
    checks = {
        "session_store": await _check_session_store(),
        "audit_log": _check_audit_log(audit_logger),
        "notifications": {"channel": "webhook" if settings.NOTIFICATION_WEBHOOK_URL else "memory"},
    }
    env_status = validate_environment()
    checks["configuration"] = {
        "status": "valid" if env_status["valid"] else "invalid",
        "warnings": env_status.get("warnings", []),
    }

    healthy = (
        checks["session_store"]["status"] != "disconnected"
        and checks["audit_log"]["status"] == "writable"
    )
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.API_VERSION,
        "checks": checks,
    }
    if not healthy:
        raise HTTPException(status_code=503, detail=body)
    return body


@api_router.get("/health/live", tags=["Health"])
async def liveness_check():
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


api_router.include_router(reconciliation_router)

app.include_router(api_router)

# ==================== MIDDLEWARE ====================

cors_config = get_cors_config()
app.add_middleware(
    CORSMiddleware,
    **cors_config
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log requests with timing and tenant context"""
    start_time = time.time()

    request_id = request.headers.get("X-Request-ID", f"req-{int(start_time * 1000)}")
    set_request_context(
        request_id=request_id,
        client_id=request.headers.get("X-Client-Id"),
        condominium_id=request.headers.get("X-Condominium-Id"),
    )

    if settings.debug_enabled:
        logger.debug(f"[{request_id}] {request.method} {request.url.path}")

    try:
        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

        if settings.debug_enabled or response.status_code >= 400:
            logger.info(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)")

        return response
    except Exception as e:
        logger.error(f"[{request_id}] Request failed: {str(e)}")
        raise
    finally:
        clear_request_context()


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    """Domain errors that escape an endpoint keep their structured body"""
    logger.warning(f"Reconciliation error on {request.url.path}: {exc.message}", extra={"details": exc.details})
    return JSONResponse(
        status_code=status_for_error(exc),
        content={"detail": ValidationErrorResponse.from_domain_error(exc)}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions"""
    logger.error(f"Unhandled exception: {exc}")
    if settings.debug_enabled:
        logger.error(traceback.format_exc())

    if settings.is_production:
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
            "traceback": traceback.format_exc() if settings.debug_enabled else None
        }
    )


def main():
    """Serve the API with uvicorn (reload in development)"""
    uvicorn.run(
        "server:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.is_development,
        log_config=None,
    )


if __name__ == "__main__":
    main()
