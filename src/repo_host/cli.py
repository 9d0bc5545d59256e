import shlex
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

from .core.config import (
    ConfigError,
    HostConfig,
    _normalize_base_path,
    load_config,
    write_default_config,
)
from .core.errors import RegistryError
from .registry import ProjectRegistry, new_record
from .server import create_app

load_dotenv()

app = typer.Typer(add_completion=False)


def _require_config(root: Optional[Path]) -> HostConfig:
    try:
        return load_config(root or Path.cwd())
    except ConfigError as exc:
        raise typer.Exit(str(exc))


@app.command()
def init(
    path: Optional[Path] = typer.Argument(None, help="Host root; defaults to CWD"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config"),
):
    """Write a default repo-host.yml and create the hosting directories."""
    root = (path or Path.cwd()).resolve()
    config_path = write_default_config(root, force=force)
    config = load_config(root)
    config.projects_root.mkdir(parents=True, exist_ok=True)
    config.metadata_dir.mkdir(parents=True, exist_ok=True)
    typer.echo(f"Config: {config_path}")
    typer.echo(f"Projects root: {config.projects_root}")


@app.command()
def serve(
    root: Optional[Path] = typer.Option(None, "--root", help="Host root path"),
    host: Optional[str] = typer.Option(None, "--host", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", help="Port to bind"),
    base_path: Optional[str] = typer.Option(
        None, "--base-path", help="Base path for project routes"
    ),
):
    """Serve hosted projects over HTTP."""
    config = _require_config(root)
    normalized_base = (
        _normalize_base_path(base_path)
        if base_path is not None
        else config.server_base_path
    )
    bind_host = host or config.server_host
    bind_port = port or config.server_port
    typer.echo(
        f"Serving projects on http://{bind_host}:{bind_port}{normalized_base or ''}"
    )
    uvicorn.run(
        create_app(config=config, base_path=normalized_base),
        host=bind_host,
        port=bind_port,
        root_path="",
    )


@app.command()
def register(
    name: str = typer.Argument(..., help="Project name (normalized to [a-z0-9-])"),
    path: Path = typer.Argument(..., help="Project directory inside the projects root"),
    repo_url: str = typer.Option("", "--repo-url", help="Source repository URL"),
    start_command: Optional[str] = typer.Option(
        None, "--start-command", help="Command that starts the project's server"
    ),
    root: Optional[Path] = typer.Option(None, "--root", help="Host root path"),
):
    """Record an already-checked-out project so it can be served."""
    config = _require_config(root)
    registry = ProjectRegistry(config.metadata_dir, config.projects_root)
    project_dir = path if path.is_absolute() else Path.cwd() / path
    if not project_dir.is_dir():
        raise typer.Exit(f"Project directory {project_dir} does not exist")
    try:
        record = new_record(
            name,
            project_dir,
            source_url=repo_url,
            start_command=shlex.split(start_command) if start_command else None,
        )
        registry.save(record)
    except (RegistryError, ValueError) as exc:
        raise typer.Exit(str(exc))
    stored = registry.lookup(record.name)
    typer.echo(f"Registered {stored.name} ({stored.mode}) at {stored.root_path}")


@app.command()
def projects(
    root: Optional[Path] = typer.Option(None, "--root", help="Host root path"),
):
    """List registered projects."""
    config = _require_config(root)
    registry = ProjectRegistry(config.metadata_dir, config.projects_root)
    records = registry.list_records()
    if not records:
        typer.echo("No projects registered")
        return
    for record in records:
        command = " ".join(record.start_command or ())
        typer.echo(
            f"{record.name}\t{record.mode}\t{record.root_path}"
            + (f"\t{command}" if command else "")
        )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
