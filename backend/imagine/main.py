import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from imagine.api.routes import health, imagine
from imagine.errors import ImagineError, SessionNotFoundError
from imagine.logging import configure_logging
from imagine.models.contracts import ErrorResponse

configure_logging()

logger = structlog.get_logger()

app = FastAPI(
    title="Imagine API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url=None,
)

REQUEST_ID_HEADER = "X-Request-ID"

# ImagineError subclasses that are not plain 400s
_ERROR_STATUS: dict[type[ImagineError], tuple[int, str]] = {
    SessionNotFoundError: (404, "session_not_found"),
}


def _error_response(
    request: Request, status: int, code: str, message: str, *, retryable: bool
) -> JSONResponse:
    response = JSONResponse(
        status_code=status,
        content=ErrorResponse(error=code, message=message, retryable=retryable).model_dump(),
    )
    # Handlers for bare Exception run outside the middleware, so set the header here too
    response.headers[REQUEST_ID_HEADER] = getattr(
        request.state, "request_id", request.headers.get(REQUEST_ID_HEADER, "")
    )
    return response


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Tag each request with an id for log correlation.

    A client-supplied X-Request-ID is reused, otherwise one is generated. It is
    bound into structlog context vars with the method and path, and echoed back.
    """
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    request.state.request_id = request_id
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id, method=request.method, path=request.url.path
    )
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Flatten FastAPI's {"detail": [...]} into one readable message."""
    message = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return _error_response(request, 422, "validation_error", message, retryable=False)


@app.exception_handler(ImagineError)
async def imagine_exception_handler(request: Request, exc: ImagineError) -> JSONResponse:
    status, code = _ERROR_STATUS.get(type(exc), (400, "imagine_error"))
    logger.warning(
        "imagine_error",
        status=status,
        error_type=type(exc).__name__,
        error=exc.message[:200],
    )
    return _error_response(request, status, code, exc.message[:200], retryable=exc.retryable)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return _error_response(
        request, 500, "internal_error", "An unexpected error occurred", retryable=True
    )


app.include_router(health.router)
app.include_router(imagine.router, prefix="/api/v1")
