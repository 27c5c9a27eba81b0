"""
Quiz Tutor FastAPI application: scoring, generation and progress endpoints
"""
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from quiz_tutor import db
from quiz_tutor.config import settings, ProgressBackend
from quiz_tutor.core.exceptions import QuizTutorException
from quiz_tutor.core.logging import get_logger, setup_logging, request_id_var, user_id_var
from quiz_tutor.routes import quiz_routes, progress_routes


SERVICE_VERSION = "1.0.0"

logger = get_logger(__name__)


def _uses_database() -> bool:
    return settings.progress_backend == ProgressBackend.DATABASE


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("Quiz Tutor service starting up",
                environment=settings.environment.value,
                progress_backend=settings.progress_backend.value,
                grader="http" if settings.grading_service_url else "llm")
    if _uses_database():
        try:
            await db.ensure_schema()
        except Exception as e:
            # Scoring and generation still work; progress writes will report failure
            logger.error("Progress schema unavailable at startup", error=str(e))

    yield

    logger.info("Quiz Tutor service shutting down")
    await db.engine.dispose()


app = FastAPI(
    title="Quiz Tutor Service",
    version=SERVICE_VERSION,
    description="Quiz scoring with open-ended grading, adaptive question generation and learning progress",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Bind a request id, time the request and log its outcome"""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)
    user_id_var.set(None)
    start_time = time.time()

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error("request_failed",
                     method=request.method,
                     path=request.url.path,
                     error=str(e),
                     duration_seconds=time.time() - start_time)
        raise

    duration = time.time() - start_time
    logger.info("request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_seconds=duration)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(duration)
    return response


@app.exception_handler(QuizTutorException)
async def handle_quiz_tutor_exception(request: Request, exc: QuizTutorException):
    log = logger.warning if exc.status_code < 500 else logger.error
    log("Request rejected",
        error=exc.message,
        error_type=type(exc).__name__,
        details=exc.details,
        path=request.url.path)

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.message,
            "type": type(exc).__name__,
            "details": exc.details,
            "request_id": request_id_var.get()
        }
    )


@app.exception_handler(Exception)
async def handle_generic_exception(request: Request, exc: Exception):
    logger.error("Unexpected error",
                 error=str(exc),
                 error_type=type(exc).__name__,
                 path=request.url.path)

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc) if settings.debug else "An unexpected error occurred",
            "request_id": request_id_var.get()
        }
    )


app.include_router(quiz_routes.router)
app.include_router(progress_routes.router)


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": "quiz-tutor",
        "version": SERVICE_VERSION,
        "environment": settings.environment.value
    }


@app.get("/health/ready")
async def readiness():
    """Ready once the progress database answers (skipped for the memory backend)"""
    if not _uses_database():
        return {"status": "ready", "checks": {"database": "skipped"}}
    try:
        await db.ping()
    except Exception as e:
        logger.error("Readiness check failed", error=str(e))
        return JSONResponse(
            status_code=503,
            content={"status": "not ready", "checks": {"database": "failed"}, "error": str(e)}
        )
    return {"status": "ready", "checks": {"database": "ok"}}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root():
    return {
        "service": "Quiz Tutor Service",
        "version": SERVICE_VERSION,
        "endpoints": {
            "score": "/ai/quiz/score",
            "generate": "/ai/quiz/generate",
            "progress": "/ai/progress/{user_id}"
        },
        "docs": "/docs",
        "metrics": "/metrics"
    }
