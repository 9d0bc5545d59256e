import asyncio
import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .core.config import HostConfig, _normalize_base_path, load_config
from .core.logging_utils import log_event, safe_log, setup_rotating_logger
from .proxy import ReverseProxy, RouteRequest
from .registry import ProjectRegistry, is_normalized_name
from .router import ProjectRouter
from .supervisor import ProcessSupervisor

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def _raw_request_path(request: Request, base_path: str) -> str:
    """Return the still-encoded request path with the base path removed."""
    raw = request.scope.get("raw_path")
    if raw:
        path = raw.decode("latin-1")
    else:
        path = request.scope.get("path") or "/"
    path = path.split("?", 1)[0]
    if base_path and (path == base_path or path.startswith(f"{base_path}/")):
        path = path[len(base_path) :]
    return path or "/"


def _route_request(request: Request, body: bytes, base_path: str) -> RouteRequest:
    return RouteRequest(
        raw_path=_raw_request_path(request, base_path),
        method=request.method,
        headers=list(request.headers.raw),
        body=body,
        query_string=request.url.query,
        client_host=request.client.host if request.client else None,
        scheme=request.url.scheme,
        base_path=base_path,
    )


def build_host_routes(base_path: str) -> APIRouter:
    """Admin endpoints under ``_host`` plus the catch-all project route.

    ``_host`` can never collide with a project: names only use ``[a-z0-9-]``.
    """
    router = APIRouter(prefix=base_path)

    @router.get("/_host/health")
    def health(request: Request):
        return {
            "status": "ok",
            "processes": len(request.app.state.supervisor.snapshot()),
        }

    @router.get("/_host/processes")
    def processes(request: Request):
        return {"processes": request.app.state.supervisor.snapshot()}

    @router.get("/_host/projects")
    async def projects(request: Request):
        records = await asyncio.to_thread(request.app.state.registry.list_records)
        return {
            "projects": [
                {
                    "name": record.name,
                    "mode": record.mode,
                    "repo_url": record.source_url,
                    "deployed_at": record.deployed_at,
                }
                for record in records
            ]
        }

    @router.delete("/_host/projects/{name}")
    async def undeploy(request: Request, name: str):
        if not is_normalized_name(name):
            raise HTTPException(status_code=400, detail="Invalid project name")
        return await request.app.state.router.undeploy(name)

    @router.api_route(
        "/{project_path:path}", methods=PROXY_METHODS, include_in_schema=False
    )
    async def route_project(request: Request, project_path: str):
        body = await request.body()
        return await request.app.state.router.handle(
            _route_request(request, body, base_path)
        )

    return router


def create_app(
    root: Optional[Path] = None,
    *,
    config: Optional[HostConfig] = None,
    base_path: Optional[str] = None,
) -> FastAPI:
    config = config or load_config(root or Path.cwd())
    base_path = (
        _normalize_base_path(base_path)
        if base_path is not None
        else config.server_base_path
    )
    logger = setup_rotating_logger(f"repo-host[{config.root}]", config.log)
    registry = ProjectRegistry(config.metadata_dir, config.projects_root, logger=logger)
    supervisor = ProcessSupervisor.from_config(config.supervisor, logger=logger)
    proxy = ReverseProxy(
        host=config.supervisor.host,
        timeout=config.proxy_timeout_seconds,
        logger=logger,
    )

    app = FastAPI(redirect_slashes=False)
    app.state.base_path = base_path
    app.state.config = config
    app.state.logger = logger
    app.state.registry = registry
    app.state.supervisor = supervisor
    app.state.proxy = proxy
    app.state.router = ProjectRouter(registry, supervisor, proxy, logger=logger)
    app.include_router(build_host_routes(base_path))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    @app.on_event("startup")
    async def start_idle_prune_task():
        idle_check_seconds = config.supervisor.idle_check_seconds
        if not config.supervisor.idle_ttl_seconds:
            return

        async def _idle_prune_loop():
            while True:
                await asyncio.sleep(idle_check_seconds)
                try:
                    closed = await supervisor.prune_idle()
                except Exception as exc:
                    safe_log(logger, logging.WARNING, "Idle process prune failed", exc=exc)
                    continue
                if closed:
                    log_event(
                        logger, logging.INFO, "supervisor.idle.pruned", closed=closed
                    )

        app.state.idle_prune_task = asyncio.create_task(_idle_prune_loop())

    @app.on_event("shutdown")
    async def shutdown_supervised_processes():
        task = getattr(app.state, "idle_prune_task", None)
        if task is not None:
            task.cancel()
        await supervisor.close_all()
        await proxy.close()

    safe_log(
        logger,
        logging.INFO,
        f"Repo host ready; projects under {config.projects_root}",
    )
    return app


__all__ = ["build_host_routes", "create_app"]
