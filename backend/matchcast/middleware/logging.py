"""
backend/matchcast/middleware/logging.py

Purpose:
    One JSON log line per HTTP request. Producer routes expose the published
    event id via the X-Event-ID header so an accepted request can be traced to
    the consumer logs that mention the same event_id.
"""

import hashlib
import json
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("matchcast.http")

_REQUEST_ID_HEADER = "X-Request-ID"
EVENT_ID_HEADER = "X-Event-ID"


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        # Honor an upstream id so proxies and the producer share one trace key.
        request_id = (request.headers.get(_REQUEST_ID_HEADER) or str(uuid.uuid4())[:8])[:64]
        request.state.request_id = request_id
        start = time.perf_counter()

        response: Response = await call_next(request)

        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            "event_id": response.headers.get(EVENT_ID_HEADER),
            "client_ip_hash": hashlib.sha256(
                (request.client.host or "").encode()
            ).hexdigest()[:12] if request.client else None,
        }

        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(level, json.dumps(log_data))

        response.headers[_REQUEST_ID_HEADER] = request_id
        return response


def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    # aio-pika / aiormq are chatty at INFO on every reconnect attempt.
    logging.getLogger("aiormq").setLevel(logging.WARNING)
    logging.getLogger("aio_pika").setLevel(logging.WARNING)
