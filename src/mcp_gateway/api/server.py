"""
FastAPI server for MCP Gateway.

Wires the resolution gateway behind bearer authentication, rate limiting and
the error mapping every route shares.
"""

import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mcp_gateway import __version__
from mcp_gateway.api.endpoints import APIEndpoints
from mcp_gateway.api.middleware import (
    ErrorHandlingMiddleware,
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityMiddleware,
)
from mcp_gateway.api.models import (
    ErrorResponse,
    HealthCheckResponse,
    ProfileCapabilitiesResponse,
    PromptEntry,
    ResourceEntry,
    ResourceTemplateEntry,
    ToolsResponse,
)
from mcp_gateway.core.exceptions import GatewayError, Unauthenticated
from mcp_gateway.core.gateway import ResolutionGateway
from mcp_gateway.core.models import CapabilityKind, ConnectionDescriptor, Profile
from mcp_gateway.utils.config import Config, get_config
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


class APIServer:
    """MCP Gateway API server."""

    def __init__(self, config: Optional[Config] = None, gateway: Optional[ResolutionGateway] = None):
        """Initialize API server."""
        self.config = config or get_config()
        self.gateway = gateway or ResolutionGateway.from_config(self.config)
        self.endpoints = APIEndpoints(self.gateway)
        self.security = HTTPBearer(auto_error=False)

        self._start_time = time.time()
        self.app = self._create_app()

        logger.info("API server initialized", extra={
            "transform_on_resolve": self.gateway.transform_on_resolve,
        })

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        """Manage application lifespan."""
        logger.info("API server starting up")
        yield
        logger.info("API server shutting down", extra={
            "uptime_seconds": round(time.time() - self._start_time, 1),
        })

    def _create_app(self) -> FastAPI:
        """Create and configure FastAPI application."""
        app = FastAPI(
            title="MCP Gateway API",
            description="Capability resolution and connection gateway",
            version=__version__,
            docs_url="/docs",
            redoc_url=None,
            lifespan=self.lifespan,
        )

        self._add_exception_handlers(app)
        self._add_middleware(app)
        self._add_routes(app)

        return app

    def _add_exception_handlers(self, app: FastAPI):
        """Map the error hierarchy onto HTTP responses."""

        @app.exception_handler(GatewayError)
        async def gateway_error_handler(request: Request, exc: GatewayError):
            if exc.status_code >= 500:
                logger.error(f"Request failed: {exc}", extra={
                    "path": request.url.path,
                    "error_type": type(exc).__name__,
                    "details": exc.details,
                })
            else:
                logger.info(f"Request rejected: {exc}", extra={
                    "path": request.url.path,
                    "status_code": exc.status_code,
                })
            return JSONResponse(status_code=exc.status_code, content={"error": exc.client_message})

    def _add_middleware(self, app: FastAPI):
        """Add middleware stack to FastAPI app."""
        app.add_middleware(SecurityMiddleware)
        app.add_middleware(
            RateLimitMiddleware,
            requests_per_minute=self.config.api.rate_limit_per_minute,
            requests_per_hour=self.config.api.rate_limit_per_hour,
        )
        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.config.api.allowed_origins,
            allow_credentials=False,
            allow_methods=["GET"],
            allow_headers=["Authorization", "Content-Type"],
        )
        app.add_middleware(RequestLoggingMiddleware)

        # Added last so it wraps everything else
        app.add_middleware(ErrorHandlingMiddleware)

    def _add_routes(self, app: FastAPI):
        """Add API routes to FastAPI app."""

        async def current_profile(
            credentials: Optional[HTTPAuthorizationCredentials] = Depends(self.security),
        ) -> Profile:
            if credentials is None:
                raise Unauthenticated("Missing bearer token", error_code="NO_CREDENTIALS")
            return self.gateway.authenticator.authenticate(credentials.credentials)

        @app.get("/health", response_model=HealthCheckResponse)
        async def health_check():
            """Health check endpoint."""
            return await self.endpoints.health_check()

        @app.get("/resolve/prompt", response_model=ConnectionDescriptor, responses=ERROR_RESPONSES)
        async def resolve_prompt(
            name: Optional[str] = Query(default=None),
            profile: Profile = Depends(current_profile),
        ):
            """Resolve a prompt name to its connection."""
            return await self.endpoints.resolve(profile, CapabilityKind.PROMPT, name, "name")

        @app.get("/resolve/resource", response_model=ConnectionDescriptor, responses=ERROR_RESPONSES)
        async def resolve_resource(
            uri: Optional[str] = Query(default=None),
            profile: Profile = Depends(current_profile),
        ):
            """Resolve a resource URI to its connection."""
            return await self.endpoints.resolve(profile, CapabilityKind.RESOURCE, uri, "uri")

        @app.get("/resolve/tool", response_model=ConnectionDescriptor, responses=ERROR_RESPONSES)
        async def resolve_tool(
            name: Optional[str] = Query(default=None),
            profile: Profile = Depends(current_profile),
        ):
            """Resolve a tool name to its connection."""
            return await self.endpoints.resolve(profile, CapabilityKind.TOOL, name, "name")

        @app.get("/prompts", response_model=List[PromptEntry], responses=ERROR_RESPONSES)
        async def list_prompts(profile: Profile = Depends(current_profile)):
            """List prompts of active connections."""
            return await self.endpoints.list_prompts(profile)

        @app.get("/tools", response_model=ToolsResponse, responses=ERROR_RESPONSES)
        async def list_tools(profile: Profile = Depends(current_profile)):
            """List tools of active connections."""
            return await self.endpoints.list_tools(profile)

        @app.get("/resources", response_model=List[ResourceEntry], responses=ERROR_RESPONSES)
        async def list_resources(profile: Profile = Depends(current_profile)):
            """List static resources of active connections."""
            return await self.endpoints.list_resources(profile)

        @app.get("/resource-templates", response_model=List[ResourceTemplateEntry],
                 responses=ERROR_RESPONSES)
        async def list_resource_templates(profile: Profile = Depends(current_profile)):
            """List resource templates of active connections."""
            return await self.endpoints.list_resource_templates(profile)

        @app.get("/profile-capabilities", response_model=ProfileCapabilitiesResponse,
                 responses=ERROR_RESPONSES)
        async def profile_capabilities(profile: Profile = Depends(current_profile)):
            """Capability kinds enabled for the caller's profile."""
            return await self.endpoints.profile_capabilities(profile)

    def run(self, host: Optional[str] = None, port: Optional[int] = None):
        """Run the API server."""
        import uvicorn

        host = host or self.config.api.host
        port = port or self.config.api.port

        logger.info("Starting API server", extra={
            "host": host,
            "port": port,
            "docs_url": f"http://{host}:{port}/docs"
        })

        uvicorn.run(
            self.app,
            host=host,
            port=port,
            log_level="info",
            access_log=not self.config.logging.suppress_http,
        )


def create_api_server(config: Optional[Config] = None, gateway: Optional[ResolutionGateway] = None) -> APIServer:
    """Factory function to create API server."""
    return APIServer(config, gateway)
