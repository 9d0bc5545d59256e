import socket
from typing import Optional

from .core.errors import LaunchError


def port_is_bindable(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    """Hands out ports from a fixed range, never the same one twice at once.

    Callers must serialize ``allocate``/``release`` themselves; the supervisor
    does so under its table lock.
    """

    def __init__(self, host: str, start: int, end: int) -> None:
        if start > end:
            raise ValueError("port range start must not exceed end")
        self._host = host
        self._start = start
        self._end = end
        self._assigned: set[int] = set()
        self._next = start

    @property
    def assigned(self) -> frozenset[int]:
        return frozenset(self._assigned)

    def allocate(self) -> int:
        span = self._end - self._start + 1
        for offset in range(span):
            candidate = self._start + (self._next - self._start + offset) % span
            if candidate in self._assigned:
                continue
            if not port_is_bindable(self._host, candidate):
                continue
            self._assigned.add(candidate)
            self._next = self._start + (candidate - self._start + 1) % span
            return candidate
        raise LaunchError(f"No free port in range {self._start}-{self._end}")

    def release(self, port: Optional[int]) -> None:
        if port is not None:
            self._assigned.discard(port)


__all__ = ["PortAllocator", "port_is_bindable"]
