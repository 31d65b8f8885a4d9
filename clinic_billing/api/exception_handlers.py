# FILE: clinic_billing/api/exception_handlers.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from clinic_billing.api.response import err
from clinic_billing.services.billing_errors import BillingError
from clinic_billing.services.error_logger import format_exception, log_error

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request,
                                    exc: BillingError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path,
                         exc.message)
        return err(msg=exc.message,
                   status_code=exc.status_code,
                   code=exc.code,
                   details=exc.details or None)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
            request: Request, exc: StarletteHTTPException) -> JSONResponse:
        # exc.detail can be str/dict/list
        msg = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return err(msg=msg, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
            request: Request, exc: RequestValidationError) -> JSONResponse:
        return err(msg="Validation error",
                   status_code=422,
                   code="request_validation",
                   details=[{
                       "loc": list(e.get("loc") or []),
                       "msg": e.get("msg"),
                       "type": e.get("type"),
                   } for e in exc.errors()])

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request,
                                          exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method,
                         request.url.path)
        db = getattr(request.state, "db", None)
        if db is not None:
            db.rollback()
            log_error(
                db,
                description=str(exc),
                endpoint=f"{request.method} {request.url.path}",
                module=type(exc).__module__,
                function=type(exc).__name__,
                http_status=500,
                stack_trace=format_exception(exc),
            )
        return err(msg="Internal server error", status_code=500)
