import dataclasses
import json
import logging
import re
import shlex
from pathlib import Path
from typing import Any, List, Optional, Sequence

from .core.errors import ProjectNotFoundError, RegistryError
from .core.logging_utils import log_event
from .core.utils import atomic_write, is_within, now_iso, read_json

MODE_STATIC = "static"
MODE_SERVER = "server"

_VALID_NAME_RE = re.compile(r"^[a-z0-9-]+$")
_INVALID_CHARS_RE = re.compile(r"[^a-z0-9-]")

NPM_START_COMMAND = ("npm", "start")


def normalize_project_name(raw: str) -> str:
    """Lowercase ``raw`` and replace every character outside ``[a-z0-9-]`` with '-'."""
    normalized = _INVALID_CHARS_RE.sub("-", raw.strip().lower())
    if not normalized:
        raise ValueError("Project name must not be empty")
    return normalized


def is_normalized_name(name: str) -> bool:
    return bool(_VALID_NAME_RE.match(name))


@dataclasses.dataclass(frozen=True)
class ProjectRecord:
    name: str
    source_url: str
    root_path: Path
    deployed_at: str
    start_command: Optional[tuple[str, ...]] = None

    @property
    def mode(self) -> str:
        return MODE_SERVER if self.start_command else MODE_STATIC

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "repoUrl": self.source_url,
            "deployedAt": self.deployed_at,
            "path": str(self.root_path),
        }
        if self.start_command:
            payload["startCommand"] = list(self.start_command)
        return payload


def _parse_start_command(value: Any) -> Optional[tuple[str, ...]]:
    if value is None:
        return None
    if isinstance(value, str):
        parts = shlex.split(value)
    elif isinstance(value, list) and all(isinstance(item, str) for item in value):
        parts = list(value)
    else:
        raise RegistryError("startCommand must be a string or a list of strings")
    return tuple(parts) or None


def detect_start_command(root: Path) -> Optional[tuple[str, ...]]:
    """Use ``npm start`` when the project's package.json declares a start script."""
    try:
        package = read_json(root / "package.json")
    except (OSError, ValueError):
        return None
    if not isinstance(package, dict):
        return None
    scripts = package.get("scripts")
    if isinstance(scripts, dict) and scripts.get("start"):
        return NPM_START_COMMAND
    return None


class ProjectRegistry:
    """Lookup-by-name store of deployed projects.

    One JSON document per project lives in ``metadata_dir``. The Deployer
    writes them; the router only reads, and every lookup returns a fresh
    immutable snapshot.
    """

    def __init__(
        self,
        metadata_dir: Path,
        hosting_root: Path,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._metadata_dir = metadata_dir
        self._hosting_root = hosting_root.resolve()
        self._logger = logger or logging.getLogger(__name__)

    @property
    def hosting_root(self) -> Path:
        return self._hosting_root

    def _record_path(self, name: str) -> Path:
        return self._metadata_dir / f"{name}.json"

    def lookup(self, name: str) -> ProjectRecord:
        if not is_normalized_name(name):
            raise ProjectNotFoundError(f"Invalid project name {name!r}", project=name)
        path = self._record_path(name)
        try:
            data = read_json(path)
        except ValueError as exc:
            raise RegistryError(
                f"Project metadata {path} is not valid JSON: {exc}", project=name
            ) from exc
        except OSError as exc:
            raise RegistryError(
                f"Project metadata {path} unreadable: {exc}", project=name
            ) from exc
        if data is None:
            raise ProjectNotFoundError(f"Unknown project {name!r}", project=name)
        return self._record_from_dict(name, data)

    def _record_from_dict(self, name: str, data: Any) -> ProjectRecord:
        if not isinstance(data, dict):
            raise RegistryError(f"Project metadata for {name} must be a mapping")
        stored_name = data.get("name", name)
        if stored_name != name:
            raise RegistryError(
                f"Project metadata name {stored_name!r} does not match {name!r}",
                project=name,
            )
        raw_path = data.get("path")
        if not isinstance(raw_path, str) or not raw_path:
            raise RegistryError(f"Project {name} has no path", project=name)
        root_path = Path(raw_path)
        if not root_path.is_absolute():
            root_path = self._hosting_root / root_path
        root_path = root_path.resolve()
        if root_path == self._hosting_root or not is_within(
            self._hosting_root, root_path
        ):
            raise RegistryError(
                f"Project {name} root {root_path} is outside hosting root {self._hosting_root}",
                project=name,
            )
        start_command = _parse_start_command(data.get("startCommand"))
        if start_command is None:
            start_command = detect_start_command(root_path)
        return ProjectRecord(
            name=name,
            source_url=str(data.get("repoUrl") or ""),
            root_path=root_path,
            deployed_at=str(data.get("deployedAt") or ""),
            start_command=start_command,
        )

    def save(self, record: ProjectRecord) -> Path:
        if not is_normalized_name(record.name):
            raise RegistryError(f"Project name {record.name!r} is not normalized")
        root_path = record.root_path.resolve()
        if root_path == self._hosting_root or not is_within(
            self._hosting_root, root_path
        ):
            raise RegistryError(
                f"Project root {root_path} is outside hosting root {self._hosting_root}",
                project=record.name,
            )
        path = self._record_path(record.name)
        atomic_write(path, json.dumps(record.to_dict(), indent=2) + "\n")
        log_event(
            self._logger,
            logging.INFO,
            "registry.record.saved",
            project=record.name,
            mode=record.mode,
        )
        return path

    def remove(self, name: str) -> bool:
        if not is_normalized_name(name):
            return False
        path = self._record_path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        log_event(self._logger, logging.INFO, "registry.record.removed", project=name)
        return True

    def list_records(self) -> List[ProjectRecord]:
        if not self._metadata_dir.is_dir():
            return []
        records: List[ProjectRecord] = []
        for path in sorted(self._metadata_dir.glob("*.json")):
            try:
                records.append(self.lookup(path.stem))
            except (ProjectNotFoundError, RegistryError) as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "registry.record.skipped",
                    path=str(path),
                    exc=exc,
                )
        return records


def new_record(
    name: str,
    root_path: Path,
    *,
    source_url: str = "",
    start_command: Optional[Sequence[str]] = None,
) -> ProjectRecord:
    return ProjectRecord(
        name=normalize_project_name(name),
        source_url=source_url,
        root_path=root_path.resolve(),
        deployed_at=now_iso(),
        start_command=tuple(start_command) if start_command else None,
    )


__all__ = [
    "MODE_SERVER",
    "MODE_STATIC",
    "NPM_START_COMMAND",
    "ProjectRecord",
    "ProjectRegistry",
    "detect_start_command",
    "is_normalized_name",
    "new_record",
    "normalize_project_name",
]
