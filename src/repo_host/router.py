from __future__ import annotations

import asyncio
import logging
import traceback
from pathlib import PurePosixPath
from typing import Any, AsyncIterator, Optional

from fastapi.responses import FileResponse, JSONResponse
from starlette.background import BackgroundTask
from starlette.responses import Response, StreamingResponse

from . import static_files
from .core.errors import (
    ClientError,
    HostError,
    MethodNotAllowedError,
    NotFoundError,
    UnavailableError,
)
from .core.logging_utils import log_event
from .core.safe_paths import SafePathError, resolve_route
from .proxy import ReverseProxy, RouteRequest
from .registry import MODE_STATIC, ProjectRecord, ProjectRegistry
from .supervisor import ProcessSupervisor

STATIC_METHODS = ("GET", "HEAD")


class ProjectRouter:
    """Dispatches project requests to static files or supervised servers.

    This is the only place that maps errors to HTTP statuses. Clients get a
    short JSON message; paths, commands and tracebacks stay in the log.
    """

    def __init__(
        self,
        registry: ProjectRegistry,
        supervisor: ProcessSupervisor,
        proxy: ReverseProxy,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._registry = registry
        self._supervisor = supervisor
        self._proxy = proxy
        self._logger = logger or logging.getLogger(__name__)

    async def handle(self, request: RouteRequest) -> Response:
        try:
            return await self._dispatch(request)
        except HostError as exc:
            return self._error_response(request, exc)
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "router.request.failed",
                method=request.method,
                path=request.raw_path,
                exc=exc,
                traceback=traceback.format_exc(),
            )
            return JSONResponse({"error": HostError.public_message}, status_code=500)

    async def _dispatch(self, request: RouteRequest) -> Response:
        if not request.method or not request.method.isalpha():
            raise ClientError(f"Malformed method {request.method!r}")
        segments = request.raw_segments
        if not segments:
            raise SafePathError("Invalid project path: no segments", path=request.raw_path)
        project_name, relative = resolve_route(segments)
        record = await asyncio.to_thread(self._registry.lookup, project_name)
        if record.mode == MODE_STATIC:
            return await self._serve_static(record, relative, request)
        return await self._serve_proxied(record, request)

    async def _serve_static(
        self, record: ProjectRecord, relative: PurePosixPath, request: RouteRequest
    ) -> Response:
        if request.method.upper() not in STATIC_METHODS:
            raise MethodNotAllowedError(
                f"{request.method} on static project {record.name}", project=record.name
            )
        asset = await asyncio.to_thread(static_files.serve, record.root_path, relative)
        return FileResponse(asset.path, media_type=asset.content_type)

    async def _serve_proxied(
        self, record: ProjectRecord, request: RouteRequest
    ) -> Response:
        port = await self._supervisor.ensure_running(record)
        lease = self._supervisor.lease(record.name)
        try:
            upstream = await self._proxy.forward(request, port)
        except UnavailableError as exc:
            lease.release()
            exc.project = record.name
            raise
        except BaseException:
            lease.release()
            raise

        async def finish() -> None:
            try:
                await upstream.close()
            finally:
                lease.release()

        async def relay() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream.body:
                    yield chunk
            finally:
                lease.release()

        try:
            response = StreamingResponse(
                relay(),
                status_code=upstream.status_code,
                background=BackgroundTask(finish),
            )
            response.raw_headers = [
                (key.lower(), value) for key, value in upstream.headers
            ]
        except BaseException:
            await finish()
            raise
        return response

    def _error_response(self, request: RouteRequest, exc: HostError) -> Response:
        if isinstance(exc, UnavailableError):
            level = logging.WARNING
        elif isinstance(exc, (ClientError, NotFoundError)):
            level = logging.INFO
        else:
            level = logging.ERROR
        log_event(
            self._logger,
            level,
            "router.request.rejected",
            status=exc.status_code,
            project=exc.project,
            method=request.method,
            path=request.raw_path,
            exc=exc,
        )
        headers = None
        if isinstance(exc, MethodNotAllowedError):
            headers = {"Allow": ", ".join(STATIC_METHODS)}
        return JSONResponse(
            {"error": exc.public_message}, status_code=exc.status_code, headers=headers
        )

    async def undeploy(self, project_name: str) -> dict[str, Any]:
        """Stop any live server for the project, then forget its record."""
        stopped = await self._supervisor.stop(project_name)
        removed = await asyncio.to_thread(self._registry.remove, project_name)
        log_event(
            self._logger,
            logging.INFO,
            "router.project.undeployed",
            project=project_name,
            stopped=stopped,
            removed=removed,
        )
        return {"project": project_name, "stopped": stopped, "removed": removed}


__all__ = ["ProjectRouter"]
