from typing import Optional
from contextlib import asynccontextmanager
from datetime import datetime
import asyncio

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from crm_agent.application.api.route import agent, approvals
from crm_agent.application.dependencies import AgentServices, build_services
from crm_agent.application.websocket import ws_server
from crm_agent.config import AgentSettings
from crm_agent.domain.errors import (
    AgentError,
    AuthError,
    ConflictError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from crm_agent.infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def status_for(error: AgentError) -> int:
    if isinstance(error, AuthError):
        return 401
    elif isinstance(error, ValidationError):
        return 400
    elif isinstance(error, NotFoundError):
        return 404
    elif isinstance(error, ConflictError):
        return 409
    elif isinstance(error, ProviderError):
        return 502
    return 500


async def agent_error_handler(request: Request, exc: AgentError) -> JSONResponse:
    """Structured errors keep their code, suggestion and details"""

    status_code = status_for(exc)
    body = {"error": exc.to_dict()}
    if "currentStatus" in exc.details:
        body["currentStatus"] = exc.details["currentStatus"]

    log = logger.warning if status_code < 500 else logger.error
    log("Request failed", path=request.url.path, status_code=status_code, error_code=exc.code, error=exc.message)
    return JSONResponse(status_code=status_code, content=body)


def create_app(services: Optional[AgentServices] = None, settings: Optional[AgentSettings] = None) -> FastAPI:
    """Build the HTTP + WebSocket application around a service graph"""

    if services is None:
        settings = settings or AgentSettings.from_env()
        setup_logging(settings.log_level, settings.log_format, settings.service_name, settings.environment)
        services = build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        health_task = asyncio.create_task(services.connection_manager.health_check())
        sweep_task = asyncio.create_task(
            services.working_memory.sweep(services.settings.working_memory_sweep_seconds)
        )
        logger.info("Agent server started", environment=services.settings.environment)
        try:
            yield
        finally:
            health_task.cancel()
            sweep_task.cancel()
            for session_id in list(services.connection_manager.active_connections.keys()):
                await services.connection_manager.disconnect(session_id)
            logger.info("Agent server shutdown")

    app = FastAPI(title="CRM Agent API", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AgentError, agent_error_handler)

    app.include_router(agent.router, prefix="/api/v1/agent", tags=["agent"])
    app.include_router(approvals.router, prefix="/api/v1/approvals", tags=["approvals"])
    app.include_router(ws_server.router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "active_connections": len(services.connection_manager.active_connections),
            "agents": services.agents.names(),
            "metrics": services.metrics.get_metrics_summary(),
            "working_memory": await services.working_memory.stats(),
            "timestamp": datetime.utcnow().isoformat()
        }

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
