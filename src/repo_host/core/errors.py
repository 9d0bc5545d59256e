"""Error taxonomy shared by every component.

Components raise these typed errors; only the router turns them into HTTP
responses. ``public_message`` is the only text that ever reaches a client.
"""

from typing import Optional


class HostError(Exception):
    status_code = 500
    public_message = "Internal server error"

    def __init__(
        self, message: str, *, project: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.project = project


class ClientError(HostError):
    status_code = 400
    public_message = "Invalid project path"


class PathEscapeError(ClientError):
    status_code = 403
    public_message = "Access denied"


class MethodNotAllowedError(ClientError):
    status_code = 405
    public_message = "Method not allowed"


class NotFoundError(HostError):
    status_code = 404
    public_message = "Not found"


class ProjectNotFoundError(NotFoundError):
    public_message = "Project not found"


class AssetNotFoundError(NotFoundError):
    public_message = "File not found"


class RegistryError(HostError):
    """Raised when stored project metadata is unreadable or unsafe."""


class UnavailableError(HostError):
    """A project server that cannot take traffic right now; retryable."""

    status_code = 502
    public_message = "Project server unavailable"


class LaunchError(UnavailableError):
    public_message = "Project server failed to start"


class ReadinessTimeout(UnavailableError):
    status_code = 503
    public_message = "Project server did not become ready"


class ProxyError(UnavailableError):
    public_message = "Failed to proxy to project server"


__all__ = [
    "AssetNotFoundError",
    "ClientError",
    "HostError",
    "LaunchError",
    "MethodNotAllowedError",
    "NotFoundError",
    "PathEscapeError",
    "ProjectNotFoundError",
    "ProxyError",
    "ReadinessTimeout",
    "RegistryError",
    "UnavailableError",
]
