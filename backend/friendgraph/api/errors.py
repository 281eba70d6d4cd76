import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from friendgraph.api.ratelimit import RateLimited
from friendgraph.domain.errors import (
    InvalidTransition,
    NotFound,
    RejectionReason,
    StorageFailure,
    ValidationFailed,
)

log = logging.getLogger(__name__)

_TRANSITION_STATUS = {
    RejectionReason.SELF_TARGET: 400,
    RejectionReason.NOT_AUTHORIZED_FOR_TRANSITION: 403,
}


def _body(detail: str, code: str) -> dict:
    return {"detail": detail, "code": code}


async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    status = _TRANSITION_STATUS.get(exc.reason, 409)
    return JSONResponse(status_code=status, content=_body(exc.message, exc.code))


async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content=_body(exc.message, exc.code))


async def validation_failed_handler(request: Request, exc: ValidationFailed):
    return JSONResponse(status_code=400, content=_body(exc.message, exc.code))


async def rate_limited_handler(request: Request, exc: RateLimited):
    return JSONResponse(
        status_code=429,
        content={
            **_body(f"Rate limit exceeded. Try again in {exc.retry_after} seconds.", exc.code),
            "retry_after": exc.retry_after,
            "limit": exc.limit,
            "window": exc.window,
        },
        headers={"Retry-After": str(exc.retry_after)},
    )


async def storage_failure_handler(request: Request, exc: StorageFailure):
    log.error("storage failure serving %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=503, content=_body("Service temporarily unavailable", exc.code)
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InvalidTransition, invalid_transition_handler)
    app.add_exception_handler(NotFound, not_found_handler)
    app.add_exception_handler(ValidationFailed, validation_failed_handler)
    app.add_exception_handler(StorageFailure, storage_failure_handler)
    app.add_exception_handler(RateLimited, rate_limited_handler)
