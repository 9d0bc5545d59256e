"""Test harness configuration.

This repo uses a `src/` layout. In some developer environments an older
installed `repo_host` package can shadow the local sources.

Ensure tests always import the in-repo code.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Callable, Optional, Sequence

import pytest

ECHO_SERVER = Path(__file__).resolve().parent / "fixtures" / "echo_server.py"


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture()
def host_root(tmp_path: Path) -> Path:
    root = tmp_path / "host"
    (root / "projects").mkdir(parents=True)
    (root / "project-metadata").mkdir(parents=True)
    return root


@pytest.fixture()
def host_config(host_root: Path):
    # Import lazily so `pytest_configure()` can prepend the local src/ directory
    # before any `repo_host` modules are loaded.
    from repo_host.core.config import build_config

    return build_config(
        host_root,
        {
            "supervisor": {
                "port_range_start": 23100,
                "port_range_end": 23999,
                "readiness_timeout_seconds": 10.0,
                "stop_timeout_seconds": 2.0,
            },
            "proxy": {"timeout_seconds": 5.0},
        },
    )


@pytest.fixture()
def echo_command() -> Callable[..., list[str]]:
    """Build the argv that starts tests/fixtures/echo_server.py."""

    def _command(scenario: str = "basic", delay: float = 0.0) -> list[str]:
        command = [sys.executable, str(ECHO_SERVER), "--scenario", scenario]
        if delay:
            command += ["--delay", str(delay)]
        return command

    return _command


@pytest.fixture()
def make_project(host_root: Path) -> Callable[..., Path]:
    """Write a project tree plus its metadata document, as the Deployer would."""

    def _make(
        name: str,
        files: Optional[dict[str, bytes]] = None,
        start_command: Optional[Sequence[str]] = None,
    ) -> Path:
        project_dir = host_root / "projects" / name
        project_dir.mkdir(parents=True, exist_ok=True)
        for rel, content in (files or {}).items():
            target = project_dir / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        metadata = {
            "name": name,
            "repoUrl": f"https://example.com/{name}.git",
            "deployedAt": "2026-01-01T00:00:00Z",
            "path": str(project_dir),
        }
        if start_command is not None:
            metadata["startCommand"] = list(start_command)
        (host_root / "project-metadata" / f"{name}.json").write_text(
            json.dumps(metadata), encoding="utf-8"
        )
        return project_dir

    return _make



@pytest.fixture()
def anyio_backend() -> str:
    # The code under test is built on asyncio (asyncio subprocesses/event loop).
    return "asyncio"
