import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from relay.metrics import record_http_request


# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Paths that would only add noise to metrics and logs
_QUIET_PATHS = {"/metrics", "/health/live"}

request_logger = logging.getLogger("relay.requests")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter to ensure ISO-8601 timestamps and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

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
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    # Remove existing handlers
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)

    logger.addHandler(json_handler)

    # Configure Uvicorn loggers to use JSON format
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Disable uvicorn.access logger since we have our own middleware
    logging.getLogger("uvicorn.access").disabled = True

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured JSON line per HTTP request.

    Log keys: ts, level, request_id, method, path, route, status, latency_ms.
    Webhook deliveries add their batch counters (webhook_messages,
    webhook_dropped and the rest) via log_webhook_data.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            if request.url.path in _QUIET_PATHS:
                return response

            latency_seconds = time.perf_counter() - start_time
            route = _route_template(request)
            record_http_request(
                method=request.method,
                route=route,
                status=response.status_code,
                latency_seconds=latency_seconds,
            )

            log_data: Dict[str, Any] = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "route": route,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            log_data.update(getattr(request.state, "webhook_log_data", {}))

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            request_logger.log(level, "Request completed", extra=log_data)
            return response
        finally:
            request_id_ctx.reset(token)


def _route_template(request: Request) -> str:
    """Matched route path (``/messages/{contact_id}``); unmatched requests share one label."""
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


def log_webhook_data(request: Request, result: Optional[str] = None, **counters: Any):
    """
    Attach webhook-specific logging data to the request state.
    This data will be included in the request log by the middleware.

    Args:
        request: FastAPI request object
        result: Delivery outcome (processed, invalid_signature, invalid_payload)
        counters: Batch counters from WebhookResult.as_log_data()
    """
    webhook_data: Dict[str, Any] = dict(counters)
    if result is not None:
        webhook_data["result"] = result
    request.state.webhook_log_data = webhook_data
