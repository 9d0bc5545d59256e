from __future__ import annotations

import stat
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .core.errors import AssetNotFoundError
from .core.safe_paths import DEFAULT_DOCUMENT, resolve_within

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES = {
    ".html": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".json": "application/json",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
}


@dataclass(frozen=True)
class StaticAsset:
    path: Path
    content_type: str
    size: int


def content_type_for(path: Path) -> str:
    return CONTENT_TYPES.get(path.suffix.lower(), DEFAULT_CONTENT_TYPE)


def serve(root: Path, relative: PurePosixPath) -> StaticAsset:
    """Locate the file for ``relative`` under ``root``.

    Only stats the file; the caller streams the body. Directories fall back to
    their ``index.html``.
    """
    path = resolve_within(root, relative)
    try:
        st = path.stat()
    except (FileNotFoundError, NotADirectoryError) as exc:
        raise AssetNotFoundError(f"No file at {relative}") from exc
    if stat.S_ISDIR(st.st_mode):
        index_path = resolve_within(root, relative / DEFAULT_DOCUMENT)
        try:
            st = index_path.stat()
        except (FileNotFoundError, NotADirectoryError) as exc:
            raise AssetNotFoundError(
                f"No {DEFAULT_DOCUMENT} found in directory {relative}"
            ) from exc
        if not stat.S_ISREG(st.st_mode):
            raise AssetNotFoundError(f"No {DEFAULT_DOCUMENT} found in directory {relative}")
        path = index_path
    elif not stat.S_ISREG(st.st_mode):
        raise AssetNotFoundError(f"{relative} is not a regular file")
    return StaticAsset(path=path, content_type=content_type_for(path), size=st.st_size)


__all__ = ["CONTENT_TYPES", "StaticAsset", "content_type_for", "serve"]
