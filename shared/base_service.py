"""
HTTP service shell shared by the content cache entry points.

Owns the FastAPI app, request correlation, Prometheus exposition and the
mapping of ContentLayerException subclasses onto JSON error responses.
"""

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from typing import Dict, Optional
import time
import os

from shared.config import ServiceConfig, get_config
from shared.logging import configure_logging, get_logger, set_request_id, clear_context, log_origin
from shared.metrics import get_metrics_collector
from shared.errors import ContentLayerException, ErrorResponse, QuotaExhaustedError

SERVICE_VERSION = "1.0.0"


class BaseService:
    """FastAPI app with health, metrics and error handling wired in."""

    def __init__(self, service_name: str, port: int, config: Optional[ServiceConfig] = None):
        self.service_name = service_name
        self.port = port
        self.config = config or get_config(service_name, port)
        configure_logging(service_name, self.config.log_level)

        self.logger = get_logger(f"{service_name}.http")
        self.metrics = get_metrics_collector(service_name)
        self._started_monotonic = time.monotonic()

        self.app = FastAPI(
            title="Content Cache Service",
            description="Cached, rate-limit aware access to a GitHub content repository",
            version=SERVICE_VERSION,
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url=None,
        )
        self._install_middleware()
        self._install_common_routes()
        self._install_error_handlers()

    def _install_middleware(self):
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def correlate(request: Request, call_next):
            request_id = set_request_id(request.headers.get("X-Request-ID"))
            started = time.perf_counter()
            try:
                with log_origin("request"):
                    response = await call_next(request)
                elapsed = time.perf_counter() - started

                # Route templates keep label cardinality bounded
                route = request.scope.get("route")
                endpoint = getattr(route, "path", "unmatched")
                self.metrics.record_http_request(request.method, endpoint, response.status_code, elapsed)
                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(elapsed * 1000, 2),
                )
                response.headers["X-Request-ID"] = request_id
                return response
            finally:
                clear_context()

    def _install_common_routes(self):

        @self.app.get("/health")
        async def health():
            try:
                dependencies = await self._check_dependencies()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(
                    status_code=503,
                    content={"service": self.service_name, "status": "error", "error": str(e)},
                )

            status = "ok" if all(value == "ok" for value in dependencies.values()) else "degraded"
            self.metrics.record_health_check(status)
            return {
                "service": self.service_name,
                "status": status,
                "uptime_seconds": round(time.monotonic() - self._started_monotonic, 3),
                "dependencies": dependencies,
                "version": SERVICE_VERSION,
                "commit": os.getenv("GIT_COMMIT", "unknown"),
            }

        @self.app.get("/metrics")
        async def metrics_endpoint():
            return Response(content=generate_latest(self.metrics.registry), media_type=CONTENT_TYPE_LATEST)

    def _install_error_handlers(self):

        @self.app.exception_handler(ContentLayerException)
        async def on_content_error(request: Request, exc: ContentLayerException):
            log = self.logger.warning if exc.status_code >= 500 else self.logger.info
            log("Request failed", code=exc.code, message=exc.message, details=exc.details)
            self.metrics.record_error(exc.code)

            headers = {}
            if isinstance(exc, QuotaExhaustedError) and exc.retry_after:
                headers["Retry-After"] = str(int(exc.retry_after))
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response().model_dump(),
                headers=headers,
            )

        @self.app.exception_handler(Exception)
        async def on_unhandled(request: Request, exc: Exception):
            self.logger.error("Unhandled exception", path=request.url.path, error=str(exc), exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
            body = ErrorResponse(code="INTERNAL_ERROR", message="Internal server error", details={})
            return JSONResponse(status_code=500, content=body.model_dump())

    async def _check_dependencies(self) -> Dict[str, str]:
        """Map of dependency name to "ok" or a short problem word."""
        return {}

    def run(self):
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
