#!/usr/bin/env python3
"""
ddfleet - API Entry Point

This is the thin orchestration layer that:
1. Loads configuration
2. Initializes modules
3. Serves the fleet and diagnostics operations over HTTP

All business logic is in the modules, following black box principles.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Literal, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from ddfleet import __version__
from ddfleet.config.provider import ConfigProvider, EnvConfigProvider
from ddfleet.logging_config import configure_logging, get_logging_config
from ddfleet.modules.api import (
    ErrorResponse,
    ExecCommandRequest,
    FleetResponse,
    RunCheckRequest,
)
from ddfleet.modules.auth import AuthModule
from ddfleet.modules.diagnostics import AgentDiagnostics
from ddfleet.modules.fleet import (
    FleetExecCoordinator,
    PodNotFoundError,
    PodRole,
    PreconditionFailedError,
)
from ddfleet.modules.kube import KubectlClient

logger = logging.getLogger(__name__)

# Module instances (initialized at startup)
auth_module: Optional[AuthModule] = None
coordinator: Optional[FleetExecCoordinator] = None
diagnostics: Optional[AgentDiagnostics] = None
kubectl_client: Optional[KubectlClient] = None


def init_modules(
    config_provider: ConfigProvider,
    pod_query=None,
    remote_exec=None,
) -> None:
    """
    Build module instances from configuration.

    pod_query and remote_exec default to a kubectl client built from the
    fleet configuration.
    """
    global auth_module, coordinator, diagnostics, kubectl_client

    fleet_config = config_provider.get_fleet_config()
    auth_module = AuthModule(config_provider.get_auth_config())

    kubectl_client = None
    if pod_query is None or remote_exec is None:
        kubectl_client = KubectlClient.from_config(fleet_config)
    if pod_query is None:
        pod_query = kubectl_client
    if remote_exec is None:
        remote_exec = kubectl_client

    coordinator = FleetExecCoordinator(pod_query, remote_exec, fleet_config)
    diagnostics = AgentDiagnostics(coordinator)

    logger.info(
        f"Fleet coordinator ready (namespace={fleet_config.namespace}, "
        f"workers={fleet_config.max_workers})"
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle - initialize modules at startup.
    """
    logger.info("Starting ddfleet API...")
    init_modules(EnvConfigProvider())
    logger.info("ddfleet API started successfully")

    yield

    logger.info("ddfleet API shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="ddfleet API",
    description="Datadog Agent fleet diagnostics for Kubernetes",
    version=__version__,
    lifespan=lifespan,
)


# Dependency injection helpers
async def verify_api_key(
    x_api_key: Optional[str] = Header(None, description="API key for authentication")
) -> Optional[str]:
    """Verify API key and return service identity."""
    if not auth_module:
        raise HTTPException(503, "Service not initialized")

    is_valid, service_identity = auth_module.verify_api_key(x_api_key)
    if not is_valid:
        raise HTTPException(401, "Invalid API key")

    return service_identity


def get_diagnostics() -> AgentDiagnostics:
    if not diagnostics:
        raise HTTPException(503, "Service not initialized")
    return diagnostics


def get_coordinator() -> FleetExecCoordinator:
    if not coordinator:
        raise HTTPException(503, "Service not initialized")
    return coordinator


# Fleet Endpoints


@app.post(
    "/exec",
    response_model=FleetResponse,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def execute(
    request: ExecCommandRequest,
    identity: Optional[str] = Depends(verify_api_key),
    fleet: FleetExecCoordinator = Depends(get_coordinator),
):
    """
    Run a command on one agent pod or on every node agent.

    Returns:
        200: Outcomes in discovery order (per-pod failures included)
        404: No pod matched in single-pod mode
        503: Cluster unreachable
    """
    exec_request = fleet.request(
        request.command,
        request.role,
        namespace=request.namespace,
        pod=None if request.all_agents else request.pod,
        node=request.node,
    )
    logger.info(f"Exec requested by {identity or 'unknown'}: {request.command[0]} (fleet={request.all_agents})")

    # The cluster agent is a single pod; fan-out applies to node agents only
    fan_out = request.all_agents and request.role is PodRole.NODE_AGENT
    result = await asyncio.to_thread(
        fleet.run, exec_request, fan_out, None, request.timeout_seconds
    )
    return FleetResponse.from_result(result)


# Diagnostics Endpoints


@app.get("/agents/status")
async def agent_status(
    namespace: Optional[str] = None,
    pod: Optional[str] = None,
    node: Optional[str] = None,
    section: Optional[str] = None,
    include_cluster_agent: bool = True,
    all_agents: bool = False,
    identity: Optional[str] = Depends(verify_api_key),
    diag: AgentDiagnostics = Depends(get_diagnostics),
):
    """Agent status, optionally one section, optionally with the Cluster Agent."""
    return await asyncio.to_thread(
        diag.status, namespace, pod, node, section, include_cluster_agent, all_agents
    )


@app.get("/agents/status/sections")
async def agent_status_sections(
    namespace: Optional[str] = None,
    pod: Optional[str] = None,
    node: Optional[str] = None,
    identity: Optional[str] = Depends(verify_api_key),
    diag: AgentDiagnostics = Depends(get_diagnostics),
):
    """List the sections of the agent status document."""
    return await asyncio.to_thread(diag.status_sections, namespace, pod, node)


@app.get("/agents/diagnose")
async def agent_diagnose(
    namespace: Optional[str] = None,
    pod: Optional[str] = None,
    node: Optional[str] = None,
    include: Optional[str] = None,
    exclude: Optional[str] = None,
    list_suites: bool = False,
    verbose: bool = False,
    include_cluster_agent: bool = True,
    all_agents: bool = False,
    identity: Optional[str] = Depends(verify_api_key),
    diag: AgentDiagnostics = Depends(get_diagnostics),
):
    """Run agent diagnose suites."""
    return await asyncio.to_thread(
        diag.diagnose,
        namespace,
        pod,
        node,
        include,
        exclude,
        list_suites,
        verbose,
        include_cluster_agent,
        all_agents,
    )


@app.post("/agents/check")
async def agent_run_check(
    request: RunCheckRequest,
    identity: Optional[str] = Depends(verify_api_key),
    diag: AgentDiagnostics = Depends(get_diagnostics),
):
    """Run an agent check once."""
    return await asyncio.to_thread(
        diag.run_check,
        request.check,
        request.namespace,
        request.pod,
        request.node,
        request.log_level,
        request.delay,
        request.times,
        request.pause,
        request.all_agents,
    )


@app.get("/agents/checks/details")
async def agent_check_details(
    namespace: Optional[str] = None,
    pod: Optional[str] = None,
    node: Optional[str] = None,
    check: Optional[str] = None,
    format: Literal["full", "summary"] = "full",
    all_agents: bool = False,
    identity: Optional[str] = Depends(verify_api_key),
    diag: AgentDiagnostics = Depends(get_diagnostics),
):
    """Check runner statistics."""
    return await asyncio.to_thread(
        diag.check_details, namespace, pod, node, check, format == "summary", all_agents
    )


@app.get("/agents/checks/configured")
async def agent_configured_checks(
    namespace: Optional[str] = None,
    pod: Optional[str] = None,
    node: Optional[str] = None,
    check: Optional[str] = None,
    all_agents: bool = False,
    identity: Optional[str] = Depends(verify_api_key),
    diag: AgentDiagnostics = Depends(get_diagnostics),
):
    """Configured checks with their providers and sources."""
    return await asyncio.to_thread(
        diag.configured_checks, namespace, pod, node, check, all_agents
    )


@app.get("/files/read")
async def read_file(
    path: str = Query(..., min_length=1),
    namespace: Optional[str] = None,
    pod: Optional[str] = None,
    node: Optional[str] = None,
    mode: Literal["full", "head", "tail"] = "tail",
    lines: int = Query(100, ge=1, le=100000),
    grep: Optional[str] = None,
    identity: Optional[str] = Depends(verify_api_key),
    diag: AgentDiagnostics = Depends(get_diagnostics),
):
    """Read a file from the agent container."""
    return await asyncio.to_thread(
        diag.read_file, path, namespace, pod, node, mode, lines, grep
    )


@app.get("/files/list")
async def list_files(
    path: str = Query(..., min_length=1),
    namespace: Optional[str] = None,
    pod: Optional[str] = None,
    node: Optional[str] = None,
    pattern: Optional[str] = None,
    type: Optional[str] = None,
    max_depth: Optional[int] = Query(1, ge=0),
    recursive: bool = False,
    long: bool = False,
    identity: Optional[str] = Depends(verify_api_key),
    diag: AgentDiagnostics = Depends(get_diagnostics),
):
    """List files in the agent container."""
    return await asyncio.to_thread(
        diag.list_files,
        path,
        namespace,
        pod,
        node,
        pattern,
        type,
        None if recursive else max_depth,
        long,
    )


# Health/Monitoring Endpoints


@app.get("/healthz")
async def healthz():
    """
    Minimal health check endpoint for Kubernetes readiness/liveness probes.

    Returns:
        200: Service is running
    """
    return {"status": "ok"}


@app.get("/health")
async def health_check():
    """
    Health check including cluster reachability.

    Returns:
        200: Service healthy
        503: Service unhealthy
    """
    modules_ready = all([auth_module, coordinator, diagnostics])

    cluster_status = "unknown"
    if kubectl_client:
        reachable = await asyncio.to_thread(kubectl_client.is_available)
        cluster_status = "connected" if reachable else "unreachable"

    content = {
        "status": "healthy",
        "modules": "initialized" if modules_ready else "not initialized",
        "cluster": cluster_status,
        "version": __version__,
    }
    if not modules_ready or cluster_status == "unreachable":
        content["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=content)
    return content


# Error handlers


@app.exception_handler(PodNotFoundError)
async def not_found_handler(request, exc):
    """Handle selectors that matched no pod."""
    logger.warning(f"Pod not found: {exc}")
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(PreconditionFailedError)
async def precondition_failed_handler(request, exc):
    """Handle an unreachable cluster or missing kubectl."""
    logger.error(f"Cluster unavailable: {exc}")
    return JSONResponse(status_code=503, content={"error": str(exc)})


@app.exception_handler(ValueError)
async def validation_error_handler(request, exc):
    """Handle validation errors."""
    logger.error(f"Validation error: {exc}")
    return JSONResponse(status_code=400, content={"error": str(exc)})


def serve(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the API server with uvicorn."""
    server_config = EnvConfigProvider().get_server_config()
    configure_logging(server_config.log_level)
    uvicorn.run(
        "ddfleet.main:app",
        host=host or server_config.host,
        port=port or server_config.port,
        log_level=server_config.log_level.lower(),
        reload=server_config.debug,
        log_config=get_logging_config(server_config.log_level),
    )


if __name__ == "__main__":
    serve()
