from __future__ import annotations

import asyncio
import collections
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, Mapping, Optional

from .core.config import SupervisorConfig
from .core.errors import LaunchError, ReadinessTimeout
from .core.logging_utils import log_event
from .ports import PortAllocator
from .registry import ProjectRecord

_CONNECT_CHECK_TIMEOUT = 0.5
_MAX_LOGGED_LINE = 2000


class ProcessState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class SupervisedProcess:
    project_name: str
    root_path: Path
    command: tuple[str, ...]
    port: int
    state: ProcessState = ProcessState.STARTING
    process: Optional[asyncio.subprocess.Process] = None
    started_at: Optional[float] = None
    last_used_at: float = 0.0
    output_tail: Deque[str] = field(default_factory=collections.deque)
    launch_task: Optional[asyncio.Task[int]] = None
    stdout_task: Optional[asyncio.Task[None]] = None
    watch_task: Optional[asyncio.Task[None]] = None
    port_released: bool = False
    active_requests: int = 0

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    def is_serving(self) -> bool:
        return (
            self.state is ProcessState.READY
            and self.process is not None
            and self.process.returncode is None
        )


@dataclass
class RequestLease:
    """Marks a handle busy while a proxied response is still streaming.

    Idle pruning and LRU eviction skip handles with open leases. Releasing twice
    is a no-op.
    """

    handle: Optional[SupervisedProcess]
    released: bool = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        if self.handle is None:
            return
        self.handle.active_requests -= 1
        self.handle.last_used_at = time.monotonic()


def _consume_task_exception(task: asyncio.Task[Any]) -> None:
    # Waiters may all have gone away; keep asyncio from warning about it.
    if not task.cancelled():
        task.exception()


class ProcessSupervisor:
    """Owns every project server process.

    At most one process per project exists at a time. The first request for a
    project starts a launch task; concurrent requests await that same task.
    The process table and the port allocator are only touched under ``_lock``.
    """

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        port_range: tuple[int, int] = (3000, 3999),
        readiness_timeout: float = 10.0,
        readiness_initial_interval: float = 0.05,
        readiness_max_interval: float = 0.5,
        stop_timeout: float = 5.0,
        idle_ttl_seconds: Optional[float] = None,
        max_processes: Optional[int] = None,
        output_tail_lines: int = 50,
        env: Optional[Mapping[str, str]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._host = host
        self._ports = PortAllocator(host, port_range[0], port_range[1])
        self._readiness_timeout = readiness_timeout
        self._readiness_initial_interval = readiness_initial_interval
        self._readiness_max_interval = readiness_max_interval
        self._stop_timeout = stop_timeout
        self._idle_ttl_seconds = idle_ttl_seconds
        self._max_processes = max_processes
        self._output_tail_lines = output_tail_lines
        self._env = dict(env) if env is not None else None
        self._logger = logger or logging.getLogger(__name__)
        self._handles: Dict[str, SupervisedProcess] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls, config: SupervisorConfig, *, logger: Optional[logging.Logger] = None
    ) -> "ProcessSupervisor":
        return cls(
            host=config.host,
            port_range=(config.port_range_start, config.port_range_end),
            readiness_timeout=config.readiness_timeout_seconds,
            readiness_initial_interval=config.readiness_initial_interval_seconds,
            readiness_max_interval=config.readiness_max_interval_seconds,
            stop_timeout=config.stop_timeout_seconds,
            idle_ttl_seconds=config.idle_ttl_seconds,
            max_processes=config.max_processes,
            output_tail_lines=config.output_tail_lines,
            logger=logger,
        )

    @property
    def host(self) -> str:
        return self._host

    async def ensure_running(self, record: ProjectRecord) -> int:
        """Return the port of the project's ready server, launching it if needed."""
        if not record.start_command:
            raise LaunchError(
                f"Project {record.name} has no start command", project=record.name
            )
        handles_to_close: list[tuple[SupervisedProcess, str]] = []
        allocation_error: Optional[LaunchError] = None
        launch: Optional[asyncio.Task[int]] = None
        async with self._lock:
            handle = self._handles.get(record.name)
            if handle is not None and handle.is_serving():
                handle.last_used_at = time.monotonic()
                return handle.port
            if (
                handle is not None
                and handle.launch_task is not None
                and not handle.launch_task.done()
            ):
                launch = handle.launch_task
            else:
                if handle is not None:
                    # Exited, but the watcher has not evicted it yet.
                    self._handles.pop(record.name, None)
                    handles_to_close.append((handle, "stale"))
                handles_to_close.extend(
                    (stale, "idle_ttl") for stale in self._pop_idle_handles_locked()
                )
                evicted = self._evict_lru_handle_locked()
                if evicted is not None:
                    handles_to_close.append((evicted, "max_processes"))
                try:
                    port = self._ports.allocate()
                except LaunchError as exc:
                    exc.project = record.name
                    allocation_error = exc
                else:
                    handle = SupervisedProcess(
                        project_name=record.name,
                        root_path=record.root_path,
                        command=tuple(record.start_command),
                        port=port,
                        output_tail=collections.deque(maxlen=self._output_tail_lines),
                        last_used_at=time.monotonic(),
                    )
                    self._handles[record.name] = handle
                    launch = asyncio.create_task(self._launch(handle))
                    launch.add_done_callback(_consume_task_exception)
                    handle.launch_task = launch
        for stale, reason in handles_to_close:
            await self._close_handle(stale, reason=reason)
        if allocation_error is not None:
            raise allocation_error
        assert launch is not None and handle is not None
        try:
            port = await asyncio.shield(launch)
        except asyncio.CancelledError:
            if launch.cancelled():
                raise LaunchError(
                    f"Launch of {record.name} was cancelled", project=record.name
                ) from None
            raise
        handle.last_used_at = time.monotonic()
        return port

    async def stop(self, project_name: str) -> bool:
        async with self._lock:
            handle = self._handles.pop(project_name, None)
        if handle is None:
            return False
        await self._close_handle(handle, reason="stop")
        return True

    async def close_all(self) -> None:
        async with self._lock:
            handles = list(self._handles.values())
            self._handles = {}
        for handle in handles:
            await self._close_handle(handle, reason="close_all")

    async def prune_idle(self) -> int:
        async with self._lock:
            handles = self._pop_idle_handles_locked()
        for handle in handles:
            await self._close_handle(handle, reason="idle_ttl")
        return len(handles)

    def snapshot(self) -> list[dict[str, Any]]:
        now = time.monotonic()
        return [
            {
                "project": handle.project_name,
                "state": handle.state.value,
                "port": handle.port,
                "pid": handle.pid,
                "started_at": handle.started_at,
                "active_requests": handle.active_requests,
                "idle_seconds": round(now - handle.last_used_at, 3)
                if handle.last_used_at
                else None,
            }
            for handle in sorted(self._handles.values(), key=lambda h: h.project_name)
        ]

    def get(self, project_name: str) -> Optional[SupervisedProcess]:
        return self._handles.get(project_name)

    def lease(self, project_name: str) -> RequestLease:
        """Hold the project's process as busy until the lease is released."""
        handle = self._handles.get(project_name)
        if handle is not None:
            handle.active_requests += 1
            handle.last_used_at = time.monotonic()
        return RequestLease(handle)

    async def _launch(self, handle: SupervisedProcess) -> int:
        env = dict(self._env if self._env is not None else os.environ)
        env["PORT"] = str(handle.port)
        log_event(
            self._logger,
            logging.INFO,
            "supervisor.process.starting",
            project=handle.project_name,
            port=handle.port,
            command=list(handle.command),
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *handle.command,
                cwd=handle.root_path,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            await self._fail(handle, exc)
            raise LaunchError(
                f"Failed to spawn {handle.command[0]!r} for {handle.project_name}: {exc}",
                project=handle.project_name,
            ) from exc
        handle.process = process
        handle.started_at = time.time()
        self._start_stdout_drain(handle)
        try:
            await self._wait_until_ready(handle)
        except Exception as exc:
            await self._fail(handle, exc)
            raise
        handle.state = ProcessState.READY
        handle.watch_task = asyncio.create_task(self._watch(handle))
        log_event(
            self._logger,
            logging.INFO,
            "supervisor.process.ready",
            project=handle.project_name,
            port=handle.port,
            pid=process.pid,
            startup_seconds=round(time.time() - handle.started_at, 3),
        )
        return handle.port

    async def _wait_until_ready(self, handle: SupervisedProcess) -> None:
        process = handle.process
        assert process is not None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._readiness_timeout
        interval = self._readiness_initial_interval
        while True:
            if process.returncode is not None:
                raise LaunchError(
                    f"{handle.project_name} exited with code {process.returncode} "
                    f"before accepting connections; last output: "
                    f"{' | '.join(handle.output_tail)}",
                    project=handle.project_name,
                )
            if await self._port_accepting(handle.port):
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ReadinessTimeout(
                    f"{handle.project_name} did not accept connections on port "
                    f"{handle.port} within {self._readiness_timeout}s",
                    project=handle.project_name,
                )
            await asyncio.sleep(min(interval, remaining))
            interval = min(interval * 2, self._readiness_max_interval)

    async def _port_accepting(self, port: int) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, port),
                timeout=_CONNECT_CHECK_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def _fail(self, handle: SupervisedProcess, exc: BaseException) -> None:
        handle.state = ProcessState.FAILED
        log_event(
            self._logger,
            logging.ERROR,
            "supervisor.process.failed",
            project=handle.project_name,
            port=handle.port,
            exc=exc,
        )
        await self._terminate(handle)
        await self._cancel_task(handle.stdout_task)
        async with self._lock:
            if self._handles.get(handle.project_name) is handle:
                self._handles.pop(handle.project_name, None)
            self._release_port_locked(handle)

    async def _watch(self, handle: SupervisedProcess) -> None:
        process = handle.process
        if process is None:
            return
        returncode = await process.wait()
        async with self._lock:
            handle.state = ProcessState.STOPPED
            if self._handles.get(handle.project_name) is handle:
                self._handles.pop(handle.project_name, None)
            self._release_port_locked(handle)
        log_event(
            self._logger,
            logging.WARNING,
            "supervisor.process.exited",
            project=handle.project_name,
            port=handle.port,
            pid=process.pid,
            returncode=returncode,
            last_output=list(handle.output_tail)[-5:],
        )

    async def _close_handle(self, handle: SupervisedProcess, *, reason: str) -> None:
        log_event(
            self._logger,
            logging.INFO,
            "supervisor.process.closing",
            reason=reason,
            project=handle.project_name,
            port=handle.port,
            pid=handle.pid,
            last_used_at=handle.last_used_at,
        )
        try:
            if handle.launch_task is not None and not handle.launch_task.done():
                await self._cancel_task(handle.launch_task)
            await self._cancel_task(handle.watch_task)
            await self._terminate(handle)
        finally:
            await self._cancel_task(handle.stdout_task)
            if handle.state is not ProcessState.FAILED:
                handle.state = ProcessState.STOPPED
            async with self._lock:
                self._release_port_locked(handle)

    def _release_port_locked(self, handle: SupervisedProcess) -> None:
        if handle.port_released:
            return
        handle.port_released = True
        self._ports.release(handle.port)

    async def _terminate(self, handle: SupervisedProcess) -> None:
        process = handle.process
        if process is None or process.returncode is not None:
            return
        _signal_process(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            _signal_process(process, getattr(signal, "SIGKILL", signal.SIGTERM))
            await process.wait()

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task[Any]]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass

    def _start_stdout_drain(self, handle: SupervisedProcess) -> None:
        """
        Continuously drain the child's merged stdout/stderr pipe.

        An undrained pipe fills up and stalls the child once it logs enough.
        """
        process = handle.process
        if process is None or process.stdout is None:
            return
        existing = handle.stdout_task
        if existing is not None and not existing.done():
            return
        handle.stdout_task = asyncio.create_task(self._drain_stdout(handle))

    async def _drain_stdout(self, handle: SupervisedProcess) -> None:
        process = handle.process
        if process is None or process.stdout is None:
            return
        stream = process.stdout
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; skip what is buffered.
                line = b"..."
            if not line:
                break
            decoded = line.decode("utf-8", errors="replace").rstrip()
            if not decoded:
                continue
            handle.output_tail.append(decoded[:_MAX_LOGGED_LINE])
            log_event(
                self._logger,
                logging.INFO,
                "supervisor.process.output",
                project=handle.project_name,
                pid=process.pid,
                line=decoded[:_MAX_LOGGED_LINE],
            )

    def _pop_idle_handles_locked(self) -> list[SupervisedProcess]:
        if not self._idle_ttl_seconds or self._idle_ttl_seconds <= 0:
            return []
        cutoff = time.monotonic() - self._idle_ttl_seconds
        stale: list[SupervisedProcess] = []
        for handle in list(self._handles.values()):
            if handle.state is not ProcessState.READY:
                continue
            if handle.active_requests > 0:
                continue
            if handle.last_used_at and handle.last_used_at < cutoff:
                self._handles.pop(handle.project_name, None)
                stale.append(handle)
        return stale

    def _evict_lru_handle_locked(self) -> Optional[SupervisedProcess]:
        if not self._max_processes or self._max_processes <= 0:
            return None
        if len(self._handles) < self._max_processes:
            return None
        candidates = [
            handle
            for handle in self._handles.values()
            if handle.state is ProcessState.READY and handle.active_requests == 0
        ]
        if not candidates:
            return None
        lru_handle = min(candidates, key=lambda handle: handle.last_used_at or 0.0)
        log_event(
            self._logger,
            logging.INFO,
            "supervisor.process.evicted",
            reason="max_processes",
            project=lru_handle.project_name,
            max_processes=self._max_processes,
            process_count=len(self._handles),
            last_used_at=lru_handle.last_used_at,
        )
        self._handles.pop(lru_handle.project_name, None)
        return lru_handle


def _signal_process(process: asyncio.subprocess.Process, sig: int) -> None:
    """Signal the child's whole process group so wrappers like npm take their children down."""
    try:
        if os.name == "posix":
            os.killpg(process.pid, sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except ProcessLookupError:
        pass


__all__ = ["ProcessState", "ProcessSupervisor", "RequestLease", "SupervisedProcess"]
