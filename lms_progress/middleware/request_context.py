"""Request context middleware: request id, acting user, access log.

Completion requests interleave.  A learner's video completion can be
queued for retry while another learner's quiz lands, and the retry
itself logs later.  Two context variables keep log lines attributable:

  request_id_var  X-Request-ID from the client, or a fresh UUID
  user_id_var     X-User-Id of the acting learner, "-" if absent

Both are ContextVars (defined in core/logging.py).  RequestContextFilter,
installed on the log handler by setup_logging(), copies them onto every
LogRecord.

Retry tasks are created inside a request and inherit a copy of its
context, so a retry that fires seconds later still logs the request id
that queued it.  Resetting the variables here afterwards does not
touch those copies.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from lms_progress.core.logging import request_id_var, user_id_var

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request_token = request_id_var.set(request_id)
        user_token = user_id_var.set(request.headers.get("x-user-id") or "-")
        started = time.perf_counter()
        try:
            response = await call_next(request)
            elapsed_ms = (time.perf_counter() - started) * 1000
            level = logging.WARNING if response.status_code >= 500 else logging.INFO
            logger.log(
                level,
                "%s %s %d %.1fms",
                request.method,
                request.url.path,
                response.status_code,
                elapsed_ms,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(elapsed_ms, 1),
                },
            )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.reset(request_token)
            user_id_var.reset(user_token)
