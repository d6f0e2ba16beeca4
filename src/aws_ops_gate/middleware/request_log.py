"""Request logging middleware with sensitive field masking."""

from __future__ import annotations

import logging
import re
import time
import uuid
from functools import lru_cache
from typing import Any, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from aws_ops_gate.utils.masking import SENSITIVE_KEY_MARKERS, redact_sensitive_fields

logger = logging.getLogger(__name__)

_MAX_MASK_DEPTH = 20

# Control character pattern for log injection prevention.
_CONTROL_CHAR_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")

MASK_FIELDS = frozenset(
    {"approvaltoken", "approval_token", "authorization", "externalid", "external_id"}
    | set(SENSITIVE_KEY_MARKERS)
)


def _sanitize_log_value(value: str) -> str:
    """Replace control characters (newlines, tabs, etc.) to prevent log injection."""
    return _CONTROL_CHAR_RE.sub("_", value)


def get_client_ip(request: Request, trust_forwarded_headers: bool = False) -> str:
    if trust_forwarded_headers:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return _sanitize_log_value(forwarded_for.split(",")[0].strip())
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return _sanitize_log_value(real_ip.strip())
    if request.client:
        return request.client.host
    return "unknown"


@lru_cache(maxsize=128)
def _get_mask_pattern(field: str) -> re.Pattern:
    return re.compile(
        rf'(["\']?{re.escape(field)}["\']?\s*[:=]\s*)["\']?[^"\'\s,}}]*["\']?',
        re.IGNORECASE,
    )


def mask_sensitive_data(data: Any, mask_fields: frozenset[str] = MASK_FIELDS, depth: int = 0):
    """Recursively mask sensitive fields in data structures."""
    if depth >= _MAX_MASK_DEPTH:
        return "***MASKED***"
    if isinstance(data, dict):
        return redact_sensitive_fields(
            data, mask="***MASKED***", depth=depth, max_depth=_MAX_MASK_DEPTH,
        )
    if isinstance(data, list):
        return [mask_sensitive_data(item, mask_fields, depth + 1) for item in data]
    if isinstance(data, str):
        return mask_exception_message(data, mask_fields)
    return data


def mask_exception_message(message: str, mask_fields: frozenset[str] = MASK_FIELDS) -> str:
    masked = message
    for field in sorted(mask_fields):
        masked = _get_mask_pattern(field).sub(r"\1***MASKED***", masked)
    return masked


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Logs REQUEST_START / REQUEST_END around every non-probe request.

    Request bodies are never logged; exception messages are masked before
    they reach the log.
    """

    EXEMPT_PATHS = frozenset({"/health", "/ready"})

    def __init__(
        self,
        app: Callable,
        enabled: bool = True,
        trust_forwarded_headers: bool = False,
    ) -> None:
        super().__init__(app)
        self.enabled = enabled
        self._trust_forwarded_headers = trust_forwarded_headers

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled or request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        request_id = _sanitize_log_value(request.headers.get("x-request-id", str(uuid.uuid4())))
        start_time = time.time()
        safe_path = _sanitize_log_value(request.url.path)
        safe_ip = _sanitize_log_value(
            get_client_ip(request, trust_forwarded_headers=self._trust_forwarded_headers)
        )

        logger.info(
            "REQUEST_START request_id=%s method=%s path=%s client_ip=%s",
            request_id,
            request.method,
            safe_path,
            safe_ip,
        )

        error_message: str | None = None
        status_code: int = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["x-request-id"] = request_id
            return response

        except Exception as e:
            error_message = mask_exception_message(str(e))
            raise

        finally:
            duration_ms = int((time.time() - start_time) * 1000)
            if error_message:
                logger.error(
                    "REQUEST_END request_id=%s method=%s path=%s status=%s "
                    "duration_ms=%d error=%s",
                    request_id,
                    request.method,
                    safe_path,
                    status_code,
                    duration_ms,
                    error_message,
                )
            else:
                logger.info(
                    "REQUEST_END request_id=%s method=%s path=%s status=%s duration_ms=%d",
                    request_id,
                    request.method,
                    safe_path,
                    status_code,
                    duration_ms,
                )
