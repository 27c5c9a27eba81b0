"""
Structured logging and monitoring for the Quiz Tutor service
"""
import sys
import time
import asyncio
from functools import wraps
from typing import Optional, Callable
from contextvars import ContextVar
import structlog
from structlog.processors import CallsiteParameter, CallsiteParameterAdder
from prometheus_client import Counter, Histogram
import logging

from quiz_tutor.config import settings

# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

# Prometheus metrics
scoring_requests = Counter("quiz_scoring_requests_total", "Total quiz scoring passes", ["status"])
scoring_duration = Histogram("quiz_scoring_duration_seconds", "Quiz scoring duration")
open_ended_batch_size = Histogram(
    "open_ended_batch_size", "Open-ended questions per grading batch",
    buckets=(1, 2, 3, 5, 8, 13, 21, 50)
)
grading_oracle_failures = Counter("grading_oracle_failures_total", "Grading oracle failures", ["reason"])
generation_attempts = Counter("question_generation_attempts_total", "Question generation oracle attempts", ["status"])
candidates_rejected = Counter("question_candidates_rejected_total", "Rejected candidate questions", ["reason"])
generation_results = Counter("question_generation_results_total", "Question generation outcomes", ["status"])
progress_writes = Counter("progress_writes_total", "Learning progress writes", ["status"])
llm_requests = Counter("llm_requests_total", "Total LLM requests", ["model", "operation", "status"])
llm_duration = Histogram("llm_duration_seconds", "LLM request duration", ["model", "operation"])


def add_request_context(logger, method_name, event_dict):
    """Add request context to log events"""
    request_id = request_id_var.get()
    user_id = user_id_var.get()

    if request_id:
        event_dict["request_id"] = request_id
    if user_id:
        event_dict["user_id"] = user_id

    # Add service metadata
    event_dict["service"] = "quiz-tutor"
    event_dict["environment"] = settings.environment.value

    return event_dict


def setup_logging():
    """Configure structured logging for the application"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper())
    )

    # Configure structlog
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        add_request_context,
        CallsiteParameterAdder(
            parameters=[CallsiteParameter.FILENAME, CallsiteParameter.LINENO]
        ),
        structlog.processors.UnicodeDecoder(),
    ]

    # Use JSON in production
    if settings.log_format == "json" or settings.is_production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a configured logger instance"""
    return structlog.get_logger(name)


def log_execution_time(func: Callable) -> Callable:
    """Decorator to log and measure function execution time"""
    logger = get_logger(func.__module__)

    @wraps(func)
    async def async_wrapper(*args, **kwargs):
        start_time = time.time()
        function_name = func.__name__

        logger.debug("function_start", function=function_name)

        try:
            result = await func(*args, **kwargs)
            duration = time.time() - start_time

            logger.info("function_success",
                        function=function_name,
                        duration_seconds=duration)

            return result

        except Exception as e:
            duration = time.time() - start_time

            logger.error("function_error",
                         function=function_name,
                         duration_seconds=duration,
                         error=str(e),
                         error_type=type(e).__name__)
            raise

    @wraps(func)
    def sync_wrapper(*args, **kwargs):
        start_time = time.time()
        function_name = func.__name__

        logger.debug("function_start", function=function_name)

        try:
            result = func(*args, **kwargs)
            duration = time.time() - start_time

            logger.info("function_success",
                        function=function_name,
                        duration_seconds=duration)

            return result

        except Exception as e:
            duration = time.time() - start_time

            logger.error("function_error",
                         function=function_name,
                         duration_seconds=duration,
                         error=str(e),
                         error_type=type(e).__name__)
            raise

    # Return appropriate wrapper
    if asyncio.iscoroutinefunction(func):
        return async_wrapper
    return sync_wrapper


class MetricsLogger:
    """Helper class for logging with metrics"""

    def __init__(self, logger: structlog.BoundLogger):
        self.logger = logger

    def log_scoring_complete(self, quiz_title: str, score: int, question_count: int,
                             open_ended_count: int, duration: float, degraded: bool):
        """Log a finished scoring pass"""
        scoring_requests.labels(status="degraded" if degraded else "success").inc()
        scoring_duration.observe(duration)
        self.logger.info("quiz_scored",
                         quiz_title=quiz_title,
                         score=score,
                         question_count=question_count,
                         open_ended_count=open_ended_count,
                         degraded=degraded,
                         duration_seconds=duration)

    def log_scoring_rejected(self, reason: str):
        """Log a scoring call rejected as invalid input"""
        scoring_requests.labels(status="invalid").inc()
        self.logger.warning("quiz_scoring_rejected", reason=reason)

    def log_grading_batch(self, size: int):
        """Log an open-ended batch sent to the grading oracle"""
        open_ended_batch_size.observe(size)
        self.logger.info("grading_batch_submitted", batch_size=size)

    def log_oracle_failure(self, reason: str, batch_size: int, fallback_score: float):
        """Log a grading oracle failure recovered with fallback credit"""
        grading_oracle_failures.labels(reason=reason).inc()
        self.logger.warning("grading_oracle_unavailable",
                            reason=reason,
                            batch_size=batch_size,
                            fallback_score=fallback_score)

    def log_generation_attempt(self, attempt: int, needed: int, requested: int,
                               raw_count: int, valid_count: int):
        """Log one regeneration attempt"""
        generation_attempts.labels(status="success").inc()
        self.logger.info("generation_attempt",
                         attempt=attempt,
                         needed=needed,
                         requested=requested,
                         raw_candidates=raw_count,
                         valid_candidates=valid_count)

    def log_generation_attempt_failed(self, attempt: int, error: str):
        """Log an oracle error during a regeneration attempt"""
        generation_attempts.labels(status="error").inc()
        self.logger.error("generation_attempt_failed", attempt=attempt, error=error)

    def log_candidate_rejected(self, reason: str):
        """Log a candidate dropped by validation"""
        candidates_rejected.labels(reason=reason).inc()
        self.logger.debug("candidate_rejected", reason=reason)

    def log_generation_complete(self, topic: str, requested: int, generated: int, attempts: int):
        """Log generation completion"""
        status = "success" if generated >= requested else "partial"
        generation_results.labels(status=status).inc()
        self.logger.info("questions_generated",
                         topic=topic,
                         requested=requested,
                         generated=generated,
                         attempts=attempts)

    def log_generation_shortfall(self, topic: str, requested: int, generated: int):
        """Log a generation run that failed the minimum count"""
        generation_results.labels(status="shortfall").inc()
        self.logger.error("question_generation_shortfall",
                          topic=topic,
                          requested=requested,
                          generated=generated)

    def log_progress_write(self, topic: str, success: bool, error: Optional[str] = None):
        """Log a learning progress write"""
        progress_writes.labels(status="success" if success else "error").inc()
        if success:
            self.logger.info("progress_saved", topic=topic)
        else:
            self.logger.error("progress_save_failed", topic=topic, error=error)

    def log_llm_complete(self, model: str, operation: str, duration: float, success: bool = True):
        """Log LLM completion"""
        status = "success" if success else "error"
        llm_requests.labels(model=model, operation=operation, status=status).inc()
        llm_duration.labels(model=model, operation=operation).observe(duration)

        if success:
            self.logger.info("llm_complete",
                             model=model,
                             operation=operation,
                             duration_seconds=duration)
        else:
            self.logger.error("llm_failed",
                              model=model,
                              operation=operation,
                              duration_seconds=duration)


# Initialize logging on module import
setup_logging()

# Create default logger
logger = get_logger(__name__)
metrics_logger = MetricsLogger(logger)
