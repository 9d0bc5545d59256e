import dataclasses
import json
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

CONFIG_FILENAME = "repo-host.yml"
CONFIG_VERSION = 1

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": CONFIG_VERSION,
    "hosting": {
        "projects_root": "projects",
        "metadata_dir": "project-metadata",
    },
    "supervisor": {
        "host": "127.0.0.1",
        "port_range_start": 3000,
        "port_range_end": 3999,
        "readiness_timeout_seconds": 10.0,
        "readiness_initial_interval_seconds": 0.05,
        "readiness_max_interval_seconds": 0.5,
        "stop_timeout_seconds": 5.0,
        "idle_ttl_seconds": 1800,
        "idle_check_seconds": 60,
        "max_processes": 16,
        "output_tail_lines": 50,
    },
    "proxy": {
        "timeout_seconds": 30.0,
    },
    "server": {
        "host": "127.0.0.1",
        "port": 4180,
        "base_path": "",
    },
    "log": {
        "path": "logs/repo-host.log",
        "max_bytes": 10_000_000,
        "backup_count": 3,
    },
}


class ConfigError(Exception):
    """Raised when configuration is invalid."""


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclasses.dataclass
class SupervisorConfig:
    host: str
    port_range_start: int
    port_range_end: int
    readiness_timeout_seconds: float
    readiness_initial_interval_seconds: float
    readiness_max_interval_seconds: float
    stop_timeout_seconds: float
    idle_ttl_seconds: Optional[float]
    idle_check_seconds: float
    max_processes: Optional[int]
    output_tail_lines: int


@dataclasses.dataclass
class HostConfig:
    raw: Dict[str, Any]
    root: Path
    version: int
    projects_root: Path
    metadata_dir: Path
    supervisor: SupervisorConfig
    proxy_timeout_seconds: float
    server_host: str
    server_port: int
    server_base_path: str
    log: LogConfig


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(base))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _normalize_base_path(path: Optional[str]) -> str:
    """Normalize base path to either '' or a single-leading-slash path without trailing slash."""
    if not path:
        return ""
    normalized = str(path).strip()
    if not normalized.startswith("/"):
        normalized = "/" + normalized
    normalized = normalized.rstrip("/")
    return normalized or ""


def find_nearest_config_path(start: Path) -> Optional[Path]:
    """Return the closest repo-host.yml walking upward from start."""
    start = start.resolve()
    search_dir = start if start.is_dir() else start.parent
    for current in [search_dir] + list(search_dir.parents):
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def _load_dotenv_for_config(config_path: Path) -> None:
    candidate = config_path.parent / ".env"
    try:
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=True)
    except Exception:
        # A broken .env must not prevent the host from starting.
        pass


def load_config(start: Path) -> HostConfig:
    """Load the nearest repo-host.yml walking upward from the provided path."""
    config_path = find_nearest_config_path(start)
    if not config_path:
        raise ConfigError(
            f"Missing config file; expected to find {CONFIG_FILENAME} in {start} or parents"
        )
    _load_dotenv_for_config(config_path)
    with config_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    return build_config(config_path.parent, data)


def build_config(root: Path, overrides: Optional[Dict[str, Any]] = None) -> HostConfig:
    merged = _merge_defaults(DEFAULT_CONFIG, overrides or {})
    _validate_config(merged)
    return _build_host_config(root.resolve(), merged)


def _optional_positive(value: Any) -> Optional[float]:
    if value is None:
        return None
    value = float(value)
    return value if value > 0 else None


def _build_host_config(root: Path, cfg: Dict[str, Any]) -> HostConfig:
    hosting = cfg["hosting"]
    sup = cfg["supervisor"]
    log_cfg = cfg["log"]
    max_processes = sup.get("max_processes")
    return HostConfig(
        raw=cfg,
        root=root,
        version=int(cfg["version"]),
        projects_root=(root / hosting["projects_root"]).resolve(),
        metadata_dir=(root / hosting["metadata_dir"]).resolve(),
        supervisor=SupervisorConfig(
            host=str(sup["host"]),
            port_range_start=int(sup["port_range_start"]),
            port_range_end=int(sup["port_range_end"]),
            readiness_timeout_seconds=float(sup["readiness_timeout_seconds"]),
            readiness_initial_interval_seconds=float(
                sup["readiness_initial_interval_seconds"]
            ),
            readiness_max_interval_seconds=float(sup["readiness_max_interval_seconds"]),
            stop_timeout_seconds=float(sup["stop_timeout_seconds"]),
            idle_ttl_seconds=_optional_positive(sup.get("idle_ttl_seconds")),
            idle_check_seconds=float(sup["idle_check_seconds"]),
            max_processes=int(max_processes) if max_processes else None,
            output_tail_lines=int(sup["output_tail_lines"]),
        ),
        proxy_timeout_seconds=float(cfg["proxy"]["timeout_seconds"]),
        server_host=str(cfg["server"]["host"]),
        server_port=int(cfg["server"]["port"]),
        server_base_path=_normalize_base_path(cfg["server"].get("base_path", "")),
        log=LogConfig(
            path=root / log_cfg["path"],
            max_bytes=int(log_cfg["max_bytes"]),
            backup_count=int(log_cfg["backup_count"]),
        ),
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_config(cfg: Dict[str, Any]) -> None:
    if cfg.get("version") != CONFIG_VERSION:
        raise ConfigError(f"Unsupported config version; expected {CONFIG_VERSION}")
    for section in ("hosting", "supervisor", "proxy", "server", "log"):
        if not isinstance(cfg.get(section), dict):
            raise ConfigError(f"{section} section must be a mapping")
    hosting = cfg["hosting"]
    for key in ("projects_root", "metadata_dir"):
        if not isinstance(hosting.get(key), str) or not hosting[key]:
            raise ConfigError(f"hosting.{key} must be a non-empty string path")
    sup = cfg["supervisor"]
    if not isinstance(sup.get("host"), str):
        raise ConfigError("supervisor.host must be a string")
    for key in ("port_range_start", "port_range_end", "output_tail_lines"):
        if not isinstance(sup.get(key), int):
            raise ConfigError(f"supervisor.{key} must be an integer")
    if not 0 < sup["port_range_start"] <= sup["port_range_end"] <= 65535:
        raise ConfigError(
            "supervisor port range must satisfy 0 < port_range_start <= port_range_end <= 65535"
        )
    for key in (
        "readiness_timeout_seconds",
        "readiness_initial_interval_seconds",
        "readiness_max_interval_seconds",
        "stop_timeout_seconds",
        "idle_check_seconds",
    ):
        if not _is_number(sup.get(key)) or sup[key] <= 0:
            raise ConfigError(f"supervisor.{key} must be a positive number")
    idle_ttl = sup.get("idle_ttl_seconds")
    if idle_ttl is not None and not _is_number(idle_ttl):
        raise ConfigError("supervisor.idle_ttl_seconds must be a number or null")
    max_processes = sup.get("max_processes")
    if max_processes is not None and not isinstance(max_processes, int):
        raise ConfigError("supervisor.max_processes must be an integer or null")
    if not _is_number(cfg["proxy"].get("timeout_seconds")):
        raise ConfigError("proxy.timeout_seconds must be a number")
    server = cfg["server"]
    if not isinstance(server.get("host", ""), str):
        raise ConfigError("server.host must be a string")
    if not isinstance(server.get("port", 0), int):
        raise ConfigError("server.port must be an integer")
    if "base_path" in server and not isinstance(server.get("base_path", ""), str):
        raise ConfigError("server.base_path must be a string if provided")
    log_cfg = cfg["log"]
    if not isinstance(log_cfg.get("path", ""), str):
        raise ConfigError("log.path must be a string path")
    for key in ("max_bytes", "backup_count"):
        if not isinstance(log_cfg.get(key, 0), int):
            raise ConfigError(f"log.{key} must be an integer")


def write_default_config(root: Path, *, force: bool = False) -> Path:
    config_path = root / CONFIG_FILENAME
    if config_path.exists() and not force:
        return config_path
    root.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as f:
        yaml.safe_dump(DEFAULT_CONFIG, f, sort_keys=False)
    return config_path
