"""Safe path validation for project routes.

Request paths arrive as raw, still percent-encoded segments. This module turns
them into a project name and a relative file path, and later confirms that the
relative path stays inside the project root once symlinks are resolved.
"""

from pathlib import Path, PurePosixPath
from typing import Optional, Sequence, Tuple
from urllib.parse import unquote

from .errors import ClientError, PathEscapeError
from .utils import is_within

DEFAULT_DOCUMENT = "index.html"

# Enough to unwrap %25-nested encodings seen in practice without looping forever.
_MAX_DECODE_ROUNDS = 4


class SafePathError(ClientError):
    """Raised when a path fails safety validation."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


def split_raw_path(raw_path: str) -> list[str]:
    """Split a raw URL path into its non-empty segments, without decoding."""
    return [segment for segment in raw_path.split("/") if segment]


def decode_segment(raw: str) -> str:
    """Percent-decode a segment until it stops changing.

    Validating the fully decoded form closes the ``%252e%252e`` family of
    double-encoding tricks.

    Raises:
        SafePathError: If the segment decodes to ``..`` or hides a separator
    """
    decoded = raw
    for _ in range(_MAX_DECODE_ROUNDS):
        next_value = unquote(decoded)
        if next_value == decoded:
            break
        decoded = next_value
    if decoded == "..":
        raise SafePathError("Invalid path: '..' not allowed", path=raw)
    if "/" in decoded or "\\" in decoded:
        raise SafePathError("Invalid path: separators not allowed in a segment", path=raw)
    if "\x00" in decoded:
        raise SafePathError("Invalid path: NUL byte not allowed", path=raw)
    return decoded


def resolve_route(raw_segments: Sequence[str]) -> Tuple[str, PurePosixPath]:
    """Split raw request segments into ``(project_name, relative_path)``.

    The first segment names the project; the rest form the relative path,
    which defaults to ``index.html``. Nothing on disk is consulted.

    Examples:
        >>> resolve_route(["my-app"])
        ('my-app', PurePosixPath('index.html'))

        >>> resolve_route(["my-app", "css", "site.css"])
        ('my-app', PurePosixPath('css/site.css'))

        >>> resolve_route(["my-app", "%2e%2e", "etc"])
        SafePathError: Invalid path: '..' not allowed
    """
    segments = [segment for segment in raw_segments if segment]
    if not segments:
        raise SafePathError("Invalid project path: no segments", path="")
    decoded = [decode_segment(segment) for segment in segments]
    project_name = decoded[0]
    if project_name == ".":
        raise SafePathError("Invalid project name", path=segments[0])
    rest = [segment for segment in decoded[1:] if segment != "."]
    relative = PurePosixPath(*rest) if rest else PurePosixPath(DEFAULT_DOCUMENT)
    return project_name, relative


def resolve_within(root: Path, relative: PurePosixPath) -> Path:
    """Join ``relative`` onto ``root`` and canonicalize, following symlinks.

    The canonical result must lie strictly below the canonical ``root``. The
    comparison is done on resolved path components, never on string prefixes,
    so ``/srv/app-evil`` does not pass for ``/srv/app`` and a
    symlink pointing outside the tree is caught.

    Raises:
        SafePathError: If ``relative`` is absolute or contains ``..``
        PathEscapeError: If the canonical path leaves ``root``
    """
    if relative.is_absolute() or ".." in relative.parts:
        raise SafePathError("Invalid path: must be relative", path=str(relative))
    canonical_root = root.resolve()
    candidate = (canonical_root / relative).resolve()
    if candidate == canonical_root or not is_within(canonical_root, candidate):
        raise PathEscapeError(
            f"Resolved path {candidate} escapes project root {canonical_root}"
        )
    return candidate


__all__ = [
    "DEFAULT_DOCUMENT",
    "SafePathError",
    "decode_segment",
    "resolve_route",
    "resolve_within",
    "split_raw_path",
]
