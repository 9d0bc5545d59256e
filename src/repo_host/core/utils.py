import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, cast


def atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        f.write(content)
    tmp_path.replace(path)


def read_json(path: Path) -> Optional[dict]:
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as f:
        return cast(Optional[dict], json.load(f))


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def is_within(root: Path, target: Path) -> bool:
    """True when ``target`` is ``root`` or lies below it (both already resolved)."""
    try:
        target.relative_to(root)
    except ValueError:
        return False
    return True
