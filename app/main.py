from fastapi import FastAPI
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from app.api import bulk_evaluate, leaderboard
from app.db.session import init_db
from app.core.exceptions import EvaluationError
from app.core.metrics import check_database_health, check_redis_health, init_fastapi_instrumentation
from app.core.logging_config import setup_logging
from app.services.leaderboard import leaderboard_service
from app.services.lease import evaluation_lease
import datetime
import logging
import os

# Configure logging (JSON)
setup_logging()

app = FastAPI(
    title="Bulk Evaluation Orchestrator",
    description="Bulk LLM scoring of competition submissions and final leaderboards",
    version="1.0.0"
)

# HTTP request metrics on the shared registry
try:
    init_fastapi_instrumentation(app)
except Exception as _e:
    logging.getLogger(__name__).exception("Prometheus metrics init failed", extra={"error": str(_e)})

_cors_origins_env = os.getenv("CORS_ORIGINS", "*")
_cors_origins = [o.strip() for o in _cors_origins_env.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if "*" in _cors_origins else _cors_origins,
    allow_credentials=False if "*" in _cors_origins else True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EvaluationError)
async def evaluation_error_handler(request: Request, exc: EvaluationError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "detail": exc.detail},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in err.get("loc", ()) if part != "body") for err in exc.errors()]
    detail = "Invalid or missing fields: " + ", ".join(f for f in fields if f)
    return JSONResponse(status_code=422, content={"error": "Invalid request", "detail": detail})


@app.on_event("startup")
def startup_event():
    logger = logging.getLogger(__name__)
    # Initialize database (non-fatal)
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.exception("DB init skipped due to error", extra={"error": str(e)})

    # Release a lease left behind by a crashed run and pause that run
    try:
        recovered = evaluation_lease.recover_stale()
        if recovered:
            logger.warning("Recovered stale evaluation lease", extra={"competition_id": recovered})
    except Exception as e:
        logger.exception("Lease recovery on startup failed", extra={"error": str(e)})

    try:
        leaderboard_service.cache.connect()
    except Exception as e:
        logger.exception("Failed to initialize Redis leaderboard cache", extra={"error": str(e)})
        logger.info("Will use database fallback for leaderboard")


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    import time
    from uuid import uuid4
    logger = logging.getLogger("request")
    start = time.perf_counter()
    request_id = str(uuid4())
    client = request.client.host if request.client else "-"

    try:
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)
        extra = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": getattr(response, "status_code", 0),
            "duration_ms": duration_ms,
            "client": client,
        }
        logger.info("request_completed", extra=extra)
        return response
    except Exception:
        duration_ms = int((time.perf_counter() - start) * 1000)
        extra = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": 500,
            "duration_ms": duration_ms,
            "client": client,
        }
        logger.exception("request_failed", extra=extra)
        raise

# Include API routes
app.include_router(bulk_evaluate.router, prefix="/api", tags=["bulk-evaluate"])
app.include_router(leaderboard.router, prefix="/api", tags=["leaderboard"])


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health_check():
    """Readiness: database and Redis cache status.

    The service only degrades without Redis (leaderboard reads fall back to the
    database), so overall status follows the database check.
    """
    logger = logging.getLogger(__name__)
    statuses = {
        "database": "ok" if check_database_health() else "error",
        "redis": "ok" if check_redis_health() else "error",
    }
    healthy = statuses["database"] == "ok"
    timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
    if not healthy:
        logger.error("health_check_failed", extra={"components": statuses})
    return {
        "status": "healthy" if healthy else "unhealthy",
        "components": statuses,
        "timestamp": timestamp,
    }
