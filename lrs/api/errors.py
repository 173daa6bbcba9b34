"""Map service errors onto HTTP responses.

  ValidationError    -> 400
  VerbNotFoundError  -> 404
  StoreError 4xx     -> that status (permanent, e.g. 409 conflict)
  StoreError other   -> 503 (retries exhausted or store unreachable)

The body keeps FastAPI's ``{"detail": ...}`` shape plus a machine code
and the request ID so a client report can be matched to server logs.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from lrs.core.errors import LrsError, StoreError
from lrs.core.logging import request_id_var

logger = logging.getLogger(__name__)


def _status_for(exc: LrsError) -> int:
    code = exc.status_code
    if isinstance(exc, StoreError):
        if code is not None and 400 <= code < 500 and code != 429:
            return code
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return code or status.HTTP_500_INTERNAL_SERVER_ERROR


async def handle_lrs_error(request: Request, exc: LrsError) -> JSONResponse:
    http_status = _status_for(exc)
    if http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=http_status,
        content={
            "detail": str(exc),
            "code": exc.code,
            "request_id": request_id_var.get("-"),
        },
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LrsError, handle_lrs_error)  # type: ignore[arg-type]
