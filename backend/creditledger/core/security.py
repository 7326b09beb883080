"""Request provenance, request logging and rate limiting."""

import logging
import time
from typing import Callable

from fastapi import Request, Response
from slowapi import Limiter
from starlette.middleware.base import BaseHTTPMiddleware

from ..models.credits import OperationContext

logger = logging.getLogger(__name__)

# Proxy headers checked in order; X-Forwarded-For may carry a chain of hops
CLIENT_IP_HEADERS = ("X-Forwarded-For", "X-Real-IP")


def get_client_ip(request: Request) -> str:
    """Originating client address, taken from proxy headers when present."""
    for header in CLIENT_IP_HEADERS:
        value = request.headers.get(header, "")
        first_hop = value.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"


def with_request_provenance(context: OperationContext, request: Request) -> OperationContext:
    """Fill in client IP and user agent from the request where the caller did not set them."""
    return context.model_copy(update={
        "ip_address": context.ip_address or get_client_ip(request),
        "user_agent": context.user_agent or request.headers.get("User-Agent"),
    })


# Rate limits are keyed by client IP
limiter = Limiter(key_func=get_client_ip)


def status_log_level(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs ledger API calls with outcome and timing.

    Only paths under API_PREFIX are logged. Bodies are never logged.
    """

    API_PREFIX = "/api/"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)

        if request.url.path.startswith(self.API_PREFIX):
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.log(
                status_log_level(response.status_code),
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"in {elapsed_ms}ms from {get_client_ip(request)}",
            )

        return response
