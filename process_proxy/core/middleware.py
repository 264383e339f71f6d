import logging
import time
from typing import Callable, List

from fastapi import Request
from fastapi.responses import JSONResponse


logger = logging.getLogger(__name__)

SLOW_REQUEST_SECONDS = 1.0
FAILURE_KIND_HEADER = "X-Proxy-Failure-Kind"
UPSTREAM_FAILURE_KINDS = {"upstream", "malformed_response"}


def request_id_for(request: Request) -> str:
    return f"{int(time.time() * 1000)}-{id(request)}"


def credential_presence(request: Request) -> str:
    if request.headers.get("authorization"):
        return "bearer"
    if request.headers.get("x-access-token"):
        return "x-access-token"
    return "none"


def apply_cors_headers(response, origin: str, allowed_origins: List[str]):
    if origin and origin in allowed_origins:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "*"
    return response


async def log_requests(request: Request, call_next: Callable):
    """Log proxied calls that failed or were slow, with the failure kind and credential source.

    Routes tag failed responses with ``X-Proxy-Failure-Kind``. Upstream-side
    failures log at WARNING so they stand apart from caller mistakes.
    """
    start_time = time.time()
    request_id = request_id_for(request)
    credential = credential_presence(request)

    try:
        response = await call_next(request)
    except Exception as e:
        process_time = time.time() - start_time
        logger.error(f"[{request_id}] {request.method} {request.url.path} credential={credential} - ERROR: {str(e)} - {process_time:.2f}s")
        raise

    process_time = time.time() - start_time
    kind = response.headers.get(FAILURE_KIND_HEADER, "")
    if process_time <= SLOW_REQUEST_SECONDS and response.status_code < 400 and not kind:
        return response

    summary = f"[{request_id}] {request.method} {request.url.path} - {response.status_code}"
    if kind:
        summary += f" ({kind})"
    summary += f" credential={credential} - {process_time:.2f}s"
    level = logging.WARNING if kind in UPSTREAM_FAILURE_KINDS or response.status_code >= 500 else logging.INFO
    logger.log(level, summary)
    return response


async def global_exception_handler(request: Request, exc: Exception, allowed_origins: List[str]):
    request_id = request_id_for(request)
    logger.error(f"[{request_id}] Unhandled exception in {request.method} {request.url.path}: {str(exc)}", exc_info=True)

    response = JSONResponse(status_code=500, content={"detail": "Internal server error"})
    return apply_cors_headers(response, request.headers.get("origin"), allowed_origins)
