"""Helpers shared by the serverless HTTP handlers.

Route functions are plain coroutines ``route(params, body, **kwargs)`` that
return ``(status, payload)``. ``serve`` does the rest: correlation id,
body parsing, running the coroutine and turning exceptions into the JSON
error envelope.
"""

import json
import asyncio
from http.server import BaseHTTPRequestHandler
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import parse_qs, urlparse
from pydantic import ValidationError

from src.utils.errors import InvalidRequestError, SwipeLinkError
from src.utils.logging import (
    correlation_context,
    generate_correlation_id,
    get_structured_logger,
)
from src.utils.logging_config import LoggingConfig

logger = get_structured_logger(__name__)

Route = Callable[..., Awaitable[tuple[int, dict]]]


def success(data: Any = None, status: int = 200, message: Optional[str] = None) -> tuple[int, dict]:
    payload: dict[str, Any] = {"success": True}
    if data is not None:
        payload["data"] = data
    if message:
        payload["message"] = message
    return status, payload


def failure(error: str, status: int, details: Optional[dict] = None) -> tuple[int, dict]:
    payload: dict[str, Any] = {"success": False, "error": error}
    if details:
        payload["details"] = details
    return status, payload


def query_params(path: str) -> dict[str, str]:
    """First value of each query parameter."""
    parsed = parse_qs(urlparse(path).query, keep_blank_values=True)
    return {name: values[0] for name, values in parsed.items()}


def read_json_body(request: BaseHTTPRequestHandler) -> dict:
    """Parse the request body as a JSON object; empty bodies give {}."""
    content_length = int(request.headers.get("Content-Length", 0) or 0)
    raw_body = request.rfile.read(content_length).decode("utf-8") if content_length > 0 else ""
    if not raw_body.strip():
        return {}
    try:
        body = json.loads(raw_body)
    except json.JSONDecodeError:
        raise InvalidRequestError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return body


def error_response(exc: Exception, failure_message: str = "internal server error") -> tuple[int, dict]:
    """Map an exception to (status, envelope)."""
    if isinstance(exc, ValidationError):
        return failure(
            "Invalid request",
            400,
            {"errors": exc.errors(include_url=False, include_context=False)},
        )
    if isinstance(exc, SwipeLinkError) and exc.status_code < 500:
        return failure(exc.public_message, exc.status_code, getattr(exc, "details", None))
    return failure(failure_message, 500)


def send_json(
    request: BaseHTTPRequestHandler,
    status: int,
    payload: dict,
    correlation_id: Optional[str] = None,
) -> None:
    request.send_response(status)
    request.send_header("Content-Type", "application/json")
    if correlation_id:
        request.send_header(LoggingConfig.LOG_CORRELATION_ID_HEADER, correlation_id)
    request.end_headers()
    request.wfile.write(json.dumps(payload, default=str).encode("utf-8"))


def serve(
    request: BaseHTTPRequestHandler,
    route: Route,
    failure_message: str = "internal server error",
    read_body: bool = True,
    **kwargs: Any,
) -> None:
    """Run one route for a handler and write its JSON response."""
    LoggingConfig.setup_logging()
    correlation_id = request.headers.get(LoggingConfig.LOG_CORRELATION_ID_HEADER) or generate_correlation_id()

    with correlation_context(correlation_id):
        try:
            params = query_params(request.path)
            body = read_json_body(request) if read_body else {}
            status, payload = asyncio.run(route(params, body, **kwargs))
        except Exception as e:
            status, payload = error_response(e, failure_message)
            if status >= 500:
                logger.error(
                    failure_message,
                    exc_info=True,
                    correlation_id=correlation_id,
                    method=request.command,
                    path=urlparse(request.path).path,
                    error=str(e),
                    error_type=type(e).__name__
                )
            else:
                logger.info(
                    "Request rejected",
                    correlation_id=correlation_id,
                    method=request.command,
                    path=urlparse(request.path).path,
                    status=status,
                    error=payload.get("error")
                )

        send_json(request, status, payload, correlation_id)
