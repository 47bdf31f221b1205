import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from activity_engine import __version__
from activity_engine.api.dependencies import get_db_service
from activity_engine.core.exceptions import (
    ActivityEngineException,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TerminalExternalError,
    TransientExternalError,
    ValidationError,
)
from activity_engine.core.services.logging import get_logging_service

logger = logging.getLogger(__name__)

app = FastAPI(title="Activity Engine API")

# First match wins; subclasses inherit their parent's status.
STATUS_BY_EXCEPTION = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (TerminalExternalError, 502),
    (TransientExternalError, 503),
)


def status_for_exception(exc: ActivityEngineException) -> int:
    for exc_type, status_code in STATUS_BY_EXCEPTION:
        if isinstance(exc, exc_type):
            return status_code
    return 500


@app.exception_handler(ActivityEngineException)
async def engine_exception_handler(request: Request, exc: ActivityEngineException):
    status_code = status_for_exception(exc)
    if status_code >= 500:
        get_logging_service().log_error(
            exc.code, str(exc), path=request.url.path, status_code=status_code
        )
    if status_code == 500:
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "detail": "Internal server error"},
        )
    return JSONResponse(
        status_code=status_code, content={"error": exc.code, "detail": str(exc)}
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "detail": "Internal server error"},
    )


from activity_engine.api.routes import assignments, classroom, quiz, students

app.include_router(assignments.router)
app.include_router(students.router)
app.include_router(quiz.router)
app.include_router(classroom.router)


@app.get("/api/status")
async def get_status():
    return {
        "status": "online",
        "version": __version__,
        "database": get_db_service().get_database_stats(),
    }
