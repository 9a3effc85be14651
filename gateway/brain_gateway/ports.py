"""TCP port allocation for locally spawned model servers."""

from __future__ import annotations

import asyncio
import logging
import socket

from .errors import PortExhausted

logger = logging.getLogger(__name__)

MAX_PORT = 65535


def port_is_free(host: str, port: int) -> bool:
    """Return True when a listener can bind host:port right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    """Hands out bindable ports, never the same one twice while reserved.

    Each candidate is re-probed on every call; the reserved set only covers
    the window between allocation and the child process binding the port.
    """

    def __init__(self, host: str, search_limit: int = 1000, probe=port_is_free):
        self._host = host
        self._search_limit = search_limit
        self._probe = probe
        self._reserved: set[int] = set()
        self._lock = asyncio.Lock()

    @property
    def reserved(self) -> frozenset[int]:
        return frozenset(self._reserved)

    async def allocate(self, preferred_start: int) -> int:
        async with self._lock:
            port = preferred_start
            for _ in range(self._search_limit):
                if port > MAX_PORT:
                    break
                if port not in self._reserved and await asyncio.to_thread(
                    self._probe, self._host, port
                ):
                    self._reserved.add(port)
                    logger.debug("Allocated port %d (start %d)", port, preferred_start)
                    return port
                port += 1
        raise PortExhausted(preferred_start, self._search_limit)

    def release(self, port: int) -> None:
        self._reserved.discard(port)
