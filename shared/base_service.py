"""
FastAPI scaffolding shared by the engine services.

A service subclasses ``BaseService``, adds its routes, and may override
``_check_dependencies`` (reported by ``/health``) and ``_shutdown``.
"""

import os
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from shared.config import ServiceConfig, get_config
from shared.errors import AccessLayerException, ErrorResponse
from shared.logging import clear_context, configure_logging, get_logger, set_request_id
from shared.metrics import get_metrics_collector

SERVICE_VERSION = "1.0.0"


class BaseService:
    """One FastAPI app with request correlation, metrics and the error contract."""

    def __init__(self, service_name: str, port: int, config: Optional[ServiceConfig] = None,
                 description: Optional[str] = None):
        self.service_name = service_name
        self.port = port
        self.config = config or get_config(service_name, port)
        self.description = description or f"Access Engine - {service_name.title()} Service"
        self.started_at = time.monotonic()

        configure_logging(service_name, self.config.log_level)
        self.logger = get_logger(f"{service_name}.http")
        self.metrics = get_metrics_collector(service_name)

        local = self.config.env == "local"
        self.app = FastAPI(
            title=f"{service_name.title()} Service",
            description=self.description,
            version=SERVICE_VERSION,
            docs_url="/docs" if local else None,
            redoc_url=None,
            lifespan=self._lifespan,
        )
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if local else [],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        self.app.middleware("http")(self._observe_request)
        self.app.add_exception_handler(AccessLayerException, self._handle_access_error)
        self.app.add_exception_handler(Exception, self._handle_unexpected_error)
        self._setup_common_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        self.logger.info("Service starting", port=self.port, env=self.config.env)
        yield
        await self._shutdown()
        self.logger.info("Service stopped")

    async def _observe_request(self, request: Request, call_next):
        request_id = set_request_id(request.headers.get("X-Request-ID"))
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            duration = time.perf_counter() - started

        # Label by route template, not raw path
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        self.metrics.record_http_request(request.method, endpoint, response.status_code, duration)
        self.logger.info(
            "HTTP request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )

        response.headers["X-Request-ID"] = request_id
        clear_context()
        return response

    async def _handle_access_error(self, request: Request, exc: AccessLayerException) -> JSONResponse:
        # Internal faults are logged in full; their response body stays generic.
        log = self.logger.error if exc.internal else self.logger.info
        log(
            "Request rejected",
            code=exc.code,
            message=exc.message,
            details=exc.details,
            status_code=exc.status_code,
            path=request.url.path
        )
        self.metrics.record_error(exc.code)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response().model_dump(by_alias=True, exclude_none=True),
            headers=exc.response_headers()
        )

    async def _handle_unexpected_error(self, request: Request, exc: Exception) -> JSONResponse:
        self.logger.error("Unhandled exception", error=str(exc), path=request.url.path, exc_info=True)
        self.metrics.record_error("INTERNAL_ERROR")
        body = ErrorResponse(error="Internal server error", code="INTERNAL_ERROR")
        return JSONResponse(status_code=500, content=body.model_dump(by_alias=True, exclude_none=True))

    def _setup_common_routes(self):

        @self.app.get("/")
        async def root():
            return {"service": self.service_name, "message": self.description, "version": SERVICE_VERSION}

        @self.app.get("/health")
        async def health_check():
            try:
                dependencies = await self._check_dependencies()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(
                    status_code=503,
                    content={"service": self.service_name, "status": "error", "error": str(e)}
                )

            self.metrics.record_health_check("ok")
            return {
                "service": self.service_name,
                "status": "ok",
                "uptime_seconds": round(time.monotonic() - self.started_at, 3),
                "dependencies": dependencies,
                "version": SERVICE_VERSION,
                "commit": os.getenv("GIT_COMMIT", "unknown")
            }

        @self.app.get("/metrics")
        async def metrics_endpoint():
            return Response(content=generate_latest(self.metrics.registry), media_type=CONTENT_TYPE_LATEST)

    async def _check_dependencies(self) -> Dict[str, str]:
        return {}

    async def _shutdown(self) -> None:
        return None

    def run(self):
        import uvicorn
        uvicorn.run(self.app, host=self.config.host, port=self.config.port,
                    log_level=self.config.log_level.lower())
