import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from aside.metrics import record_http_request


# Correlation id for the current request or WebSocket connection
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Twilio resends a failed webhook with the same token in this header
TWILIO_IDEMPOTENCY_HEADER = "I-Twilio-Idempotency-Token"


@contextmanager
def bind_request_id(request_id: str) -> Iterator[str]:
    """
    Tag every log record emitted inside the block with request_id.

    Used for WebSocket connections, which never pass through the HTTP
    middleware; tasks created inside the block keep the id.
    """
    token = request_id_ctx.set(request_id)
    try:
        yield request_id
    finally:
        request_id_ctx.reset(token)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter to ensure ISO-8601 timestamps and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        # ISO-8601, millisecond precision, Z suffix
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        # Post-processing tasks inherit the request context they were scheduled from
        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    # Configure root logger
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())
    logger.handlers = []

    # One JSON handler on stdout, shared with uvicorn below
    json_handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)
    logger.addHandler(json_handler)

    # Configure Uvicorn loggers to use JSON format
    uvicorn_loggers = [
        "uvicorn",
        "uvicorn.error",
        "uvicorn.access",
    ]

    for logger_name in uvicorn_loggers:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Disable uvicorn.access logger since we have our own middleware
    logging.getLogger("uvicorn.access").disabled = True

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Log keys:
    - ts, level, request_id
    - method, path, status, latency_ms
    - idempotency_token: Twilio's retry token, when the provider sent one

    For webhook requests, also includes:
    - message_id: stored message id (when one was produced)
    - provider: which payload shape was recognized
    - dup: whether the delivery was already stored
    - result: created, merged, duplicate, skipped, untrusted, malformed, error

    WebSocket traffic bypasses this middleware (see bind_request_id).
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Honour an upstream id so a proxy's logs and ours line up
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        start_time = time.time()

        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
        }
        idempotency_token = request.headers.get(TWILIO_IDEMPOTENCY_HEADER)
        if idempotency_token:
            log_data["idempotency_token"] = idempotency_token

        logger = logging.getLogger("aside.requests")

        try:
            try:
                response = await call_next(request)
            except Exception:
                log_data["status"] = 500
                log_data["latency_ms"] = round((time.time() - start_time) * 1000, 2)
                logger.exception("Request failed", extra=log_data)
                raise

            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.time() - start_time
            log_data["status"] = response.status_code
            log_data["latency_ms"] = round(latency_seconds * 1000, 2)

            # Scrapes of /metrics would otherwise count themselves
            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            # Set by log_webhook_data on the webhook route
            if hasattr(request.state, "webhook_log_data"):
                log_data.update(request.state.webhook_log_data)

            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(
    request: Request,
    result: str,
    message_id: Optional[int] = None,
    provider: Optional[str] = None,
    dup: bool = False,
):
    """
    Attach webhook-specific logging data to the request state.
    This data will be included in the request log by the middleware.

    Args:
        request: FastAPI request object
        result: Webhook outcome, as counted in webhook_requests_total
        message_id: Stored message id, if the delivery produced or matched one
        provider: "twilio" or "gateway", once the payload shape is known
        dup: Whether the delivery had already been stored
    """
    webhook_data = {"result": result, "dup": dup}

    if message_id is not None:
        webhook_data["message_id"] = message_id

    if provider is not None:
        webhook_data["provider"] = provider

    request.state.webhook_log_data = webhook_data
