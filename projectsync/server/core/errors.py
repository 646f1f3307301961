from __future__ import annotations

import logging
import traceback
import uuid
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from projectsync.logging_config import log_context

_log = logging.getLogger("projectsync.errors")


def _request_id(request: Request) -> Optional[str]:
    state_rid = getattr(request.state, "request_id", None)
    header_rid = request.headers.get("X-Request-ID")
    return state_rid or header_rid or None


def _error_response(
    request: Request,
    *,
    status: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    rid = _request_id(request)
    body = {"ok": False, "code": code, "message": message}
    if details is not None:
        body["details"] = details
    if rid:
        body["request_id"] = rid

    response = JSONResponse(body, status_code=status)
    if rid:
        response.headers["X-Request-ID"] = rid
    return response


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def _http_exc(request: Request, exc: StarletteHTTPException):
        detail = exc.detail
        return _error_response(
            request,
            status=exc.status_code,
            code=getattr(exc, "error_code", None) or f"http_{exc.status_code}",
            message=str(detail) if detail else "Request failed",
            details=detail if isinstance(detail, (dict, list)) else None,
        )

    @app.exception_handler(RequestValidationError)
    async def _val_exc(request: Request, exc: RequestValidationError):
        with log_context(request_id=_request_id(request)):
            _log.info("Rejected malformed request to %s: %s", request.url.path, exc)
        return _error_response(
            request,
            status=422,
            code="validation_error",
            message="Request validation failed",
            details=jsonable_encoder(exc.errors()),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        err_id = uuid.uuid4().hex
        tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        with log_context(request_id=_request_id(request)):
            _log.error("Unhandled exception [%s]: %s", err_id, tb)
        return _error_response(
            request,
            status=500,
            code="internal_error",
            message="Internal server error",
            details={"error_id": err_id},
        )


__all__ = ["register_exception_handlers"]
