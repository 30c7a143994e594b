"""
Exception handlers mapping service errors onto HTTP responses.

Every error body is ``exception.to_dict()``:
- ValidationError / request validation -> 400
- AuthError -> 401, or 403 for ownership mismatches
- NotFoundError -> 404
- RateLimitedError -> 429 with Retry-After when known
- ProviderError, ProviderAuthError -> 502
- DatabaseException and anything else from the service -> 500
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core import (
    AuthError,
    CalendarServiceException,
    DatabaseException,
    NotFoundError,
    ProviderAuthError,
    ProviderError,
    RateLimitedError,
    ValidationError,
    get_logger,
)

logger = get_logger(__name__)


async def _handle_validation(request: Request, exc: ValidationError) -> JSONResponse:
    logger.info("Rejected request", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=400, content=exc.to_dict())


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in e.get("loc", ())[1:]), "reason": e.get("msg")}
        for e in exc.errors()
    ]
    logger.info("Rejected request body", path=request.url.path, errors=len(errors))
    return JSONResponse(
        status_code=400,
        content={"error": "VALIDATION_ERROR", "message": "Invalid request", "context": {"errors": errors}},
    )


async def _handle_auth(request: Request, exc: AuthError) -> JSONResponse:
    status = 403 if exc.forbidden else 401
    logger.info("Auth failure", path=request.url.path, status=status, error=exc.message)
    return JSONResponse(status_code=status, content=exc.to_dict())


async def _handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content=exc.to_dict())


async def _handle_rate_limited(request: Request, exc: RateLimitedError) -> JSONResponse:
    logger.warning("Provider rate limited request", path=request.url.path, retry_after=exc.retry_after_seconds)
    headers = {}
    if exc.retry_after_seconds is not None:
        headers["Retry-After"] = str(int(exc.retry_after_seconds))
    return JSONResponse(status_code=429, content=exc.to_dict(), headers=headers)


async def _handle_provider(request: Request, exc: CalendarServiceException) -> JSONResponse:
    # The caller's session is fine; the provider grant is what failed
    logger.error("Provider request failed", path=request.url.path, error=exc.message, context=exc.context)
    return JSONResponse(status_code=502, content=exc.to_dict())


async def _handle_service(request: Request, exc: CalendarServiceException) -> JSONResponse:
    logger.error("Unhandled service error", path=request.url.path, error=exc.message, code=exc.error_code)
    return JSONResponse(status_code=500, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    """Attach handlers; Starlette resolves the most specific class in the MRO."""
    app.add_exception_handler(ValidationError, _handle_validation)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.add_exception_handler(AuthError, _handle_auth)
    app.add_exception_handler(ProviderAuthError, _handle_provider)
    app.add_exception_handler(NotFoundError, _handle_not_found)
    app.add_exception_handler(RateLimitedError, _handle_rate_limited)
    app.add_exception_handler(ProviderError, _handle_provider)
    app.add_exception_handler(DatabaseException, _handle_service)
    app.add_exception_handler(CalendarServiceException, _handle_service)
