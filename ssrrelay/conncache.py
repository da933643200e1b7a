"""Cache of per-source UDP associations with idle expiry."""

from __future__ import annotations

import logging
import socket
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Iterator, List, Optional, Tuple

from .udpheader import MAX_UDP_CONN_NUM

_log = logging.getLogger("ssrrelay")


@dataclass(eq=False)
class RemoteContext:
    """One association between a client source address and an outgoing socket."""

    sock: Any
    src_addr: Tuple
    af: int = socket.AF_UNSPEC
    addr_header: bytes = b""
    dst_addr: Optional[Tuple] = None
    timeout: float = 60.0
    clock: Callable[[], float] = time.monotonic
    last_active: float = field(init=False)
    closed: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        self.last_active = self.clock()

    @property
    def deadline(self) -> float:
        """The time at which the association expires if left idle."""
        return self.last_active + self.timeout

    def touch(self) -> None:
        """Restart the idle timer."""
        self.last_active = self.clock()

    def close(self) -> None:
        """Close the outgoing socket; further calls do nothing."""
        if self.closed:
            return
        self.closed = True
        if self.sock is not None:
            self.sock.close()


class ConnectionCache:
    """Least-recently-used map of cache keys to :class:`RemoteContext`.

    Entries that are evicted, removed, expired or cleared are handed to
    ``on_free``, which closes them by default.
    """

    def __init__(
        self,
        capacity: int = MAX_UDP_CONN_NUM,
        on_free: Optional[Callable[[RemoteContext], None]] = None,
        verbose: bool = False,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.verbose = verbose
        self._on_free = on_free or RemoteContext.close
        self._entries: "OrderedDict[Hashable, RemoteContext]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[Hashable]:
        return iter(list(self._entries))

    def _free(self, remote: RemoteContext) -> None:
        if self.verbose:
            _log.info("[udp] one connection freed")
        self._on_free(remote)

    def lookup(self, key: Hashable) -> Optional[RemoteContext]:
        """Return the entry for ``key`` and mark it recently used, or ``None``."""
        remote = self._entries.get(key)
        if remote is not None:
            self._entries.move_to_end(key)
        return remote

    def insert(self, key: Hashable, remote: RemoteContext) -> None:
        """Store ``remote`` under ``key``, freeing whatever it replaces or evicts."""
        old = self._entries.pop(key, None)
        if old is not None and old is not remote:
            self._free(old)
        self._entries[key] = remote
        while len(self._entries) > self.capacity:
            _, evicted = self._entries.popitem(last=False)
            self._free(evicted)

    def remove(self, key: Hashable) -> bool:
        """Free and drop the entry for ``key``; return whether one existed."""
        remote = self._entries.pop(key, None)
        if remote is None:
            return False
        self._free(remote)
        return True

    def expire(self, now: Optional[float] = None) -> List[Hashable]:
        """Free every entry idle past its timeout and return their keys."""
        stale = [
            key for key, remote in self._entries.items()
            if remote.deadline <= (remote.clock() if now is None else now)
        ]
        for key in stale:
            if self.verbose:
                _log.info("[udp] connection timeout")
            self.remove(key)
        return stale

    def clear(self) -> None:
        """Free and drop every entry."""
        while self._entries:
            _, remote = self._entries.popitem(last=False)
            self._free(remote)