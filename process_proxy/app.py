import logging
import time
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from . import __version__
from .core.config import ProxyConfig
from .core.middleware import FAILURE_KIND_HEADER, global_exception_handler, log_requests
from .core.models import ErrorKind, FetchFailed, FetchOk
from .core.tokens import describe_token, normalize_token
from .core.validation import normalize_endpoint, validate_process_id
from .services.process_service import ProcessProxyService

logger = logging.getLogger(__name__)

FAILURE_STATUS = {
    ErrorKind.NO_CREDENTIAL: 404,
    ErrorKind.AUTH_EXPIRED: 401,
    ErrorKind.UPSTREAM: 502,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.MALFORMED_RESPONSE: 502,
    ErrorKind.PREVIEW_UNAVAILABLE: 404,
}

FAILURE_MESSAGE = {
    ErrorKind.NO_CREDENTIAL: "No access token found for user",
    ErrorKind.AUTH_EXPIRED: "Access token is invalid or expired",
}


def raw_credential(request: Request) -> Optional[str]:
    """Read the caller's raw stored token from the request headers.

    ``Authorization: Bearer ...`` wins over ``X-Access-Token``. The value is
    returned as-is; it may still be JSON-wrapped.
    """
    authorization = request.headers.get("authorization", "")
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return request.headers.get("x-access-token") or None


def get_service(request: Request) -> ProcessProxyService:
    return request.app.state.process_service


def failure_response(failure: FetchFailed) -> JSONResponse:
    return JSONResponse(
        status_code=FAILURE_STATUS.get(failure.kind, 502),
        content={
            "success": False,
            "error": FAILURE_MESSAGE.get(failure.kind, failure.message),
            "kind": failure.kind.value,
        },
        headers={FAILURE_KIND_HEADER: failure.kind.value},
    )


def create_app(config: Optional[ProxyConfig] = None, service: Optional[ProcessProxyService] = None) -> FastAPI:
    """Build the proxy application around an explicit configuration.

    - ``config`` defaults to the environment
    - ``service`` defaults to one built from ``config``
    """
    config = config or (service.config if service else ProxyConfig.from_env())
    allowed_origins = config.allowed_origins()

    app = FastAPI(title="Process Proxy API", version=__version__)
    app.state.config = config
    app.state.process_service = service or ProcessProxyService(config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _log_requests(request, call_next):
        return await log_requests(request, call_next)

    @app.exception_handler(Exception)
    async def _global_exception_handler(request, exc):
        return await global_exception_handler(request, exc, allowed_origins)

    @app.get("/api/processes/owned")
    async def owned_processes(
        credential: Optional[str] = Depends(raw_credential),
        service: ProcessProxyService = Depends(get_service),
    ):
        """Return the caller's processes as a list of ``{id, displayName}``."""
        result = await service.fetch_owned(credential)
        if isinstance(result, FetchFailed):
            return failure_response(result)
        return [summary.to_dict() for summary in result.value]

    @app.get("/fabublox/process/{process_id}")
    async def get_process(
        process_id: str,
        credential: Optional[str] = Depends(raw_credential),
        service: ProcessProxyService = Depends(get_service),
    ):
        validate_process_id(process_id)
        result = await service.fetch_detail(credential, process_id)
        if isinstance(result, FetchFailed):
            return failure_response(result)
        return result.value.to_dict()

    @app.get("/fabublox/process_svg/{process_id}")
    async def process_svg(
        process_id: str,
        credential: Optional[str] = Depends(raw_credential),
        service: ProcessProxyService = Depends(get_service),
    ):
        """Relay a process preview: JSON payloads as JSON, anything else as SVG."""
        validate_process_id(process_id)
        preview = await service.fetch_preview(process_id, credential)
        if isinstance(preview, FetchFailed):
            logger.warning(f"No SVG content found for process ID: {process_id}")
            return JSONResponse(
                status_code=404,
                content={"error": "Could not retrieve SVG content"},
                headers={FAILURE_KIND_HEADER: ErrorKind.PREVIEW_UNAVAILABLE.value},
            )

        payload = preview.as_json()
        if payload is not None:
            return JSONResponse(content=payload)
        return Response(content=preview.content, media_type="image/svg+xml")

    @app.get("/fabublox/current_user_token")
    async def current_user_token(credential: Optional[str] = Depends(raw_credential)):
        token = normalize_token(credential)
        if not token:
            return JSONResponse(status_code=404, content={"success": False, "error": "No access token found for user"})
        return {"success": True, "token": token}

    @app.post("/fabublox/authenticated_request")
    async def authenticated_request(
        endpoint: str = Form(None),
        credential: Optional[str] = Depends(raw_credential),
        service: ProcessProxyService = Depends(get_service),
    ):
        """Proxy a GET to an arbitrary relative upstream endpoint with the caller's token."""
        if not credential or not endpoint:
            logger.warning(f"Missing token or endpoint. Token present: {bool(credential)}, Endpoint: {endpoint}")
            raise HTTPException(status_code=400, detail="Missing token or endpoint")
        try:
            normalize_endpoint(endpoint)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        result = await service.fetch_endpoint(credential, endpoint)
        if isinstance(result, FetchOk):
            return result.value
        return failure_response(result)

    @app.get("/fabublox/debug_token")
    async def debug_token(credential: Optional[str] = Depends(raw_credential)):
        return describe_token(credential)

    @app.get("/health")
    async def health_check():
        """Report whether the proxy is configured well enough to serve requests."""
        health_start_time = time.time()
        try:
            config.validate()
            health_duration = time.time() - health_start_time
            return {
                "status": "healthy",
                "service": "process-proxy",
                "upstream": config.base_url,
                "timestamp": datetime.now().isoformat(),
                "response_time_ms": round(health_duration * 1000, 2),
            }
        except ValueError as e:
            health_duration = time.time() - health_start_time
            logger.error(f"Health check failed: {str(e)} - Duration: {health_duration:.1f}s")
            return {
                "status": "unhealthy",
                "service": "process-proxy",
                "timestamp": datetime.now().isoformat(),
                "error": str(e),
                "response_time_ms": round(health_duration * 1000, 2),
            }

    @app.get("/")
    async def root():
        return {
            "service": "Process Proxy API",
            "version": __version__,
            "endpoints": {
                "owned_processes": "/api/processes/owned",
                "process": "/fabublox/process/{process_id}",
                "process_svg": "/fabublox/process_svg/{process_id}",
                "current_user_token": "/fabublox/current_user_token",
                "authenticated_request": "/fabublox/authenticated_request",
                "debug_token": "/fabublox/debug_token",
                "health": "/health",
            },
            "timestamp": datetime.now().isoformat(),
            "description": "Authenticated proxy for remote processes and their SVG previews",
        }

    return app


app = create_app()
