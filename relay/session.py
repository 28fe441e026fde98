from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import os
import stat
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class EndpointKind(str, Enum):
    SSH_AGENT = "ssh-agent"
    GPG_AGENT = "gpg-agent"
    GPG_AGENT_EXTRA = "gpg-agent-extra"


class TargetKind(str, Enum):
    NAMED_PIPE = "named-pipe"
    TCP_ADDRESS = "tcp-address"
    SUBPROCESS_EXEC = "subprocess-exec"


@dataclass(slots=True)
class RelayEndpoint:
    kind: EndpointKind
    listen_path: Path
    target_kind: TargetKind
    target_address: str

    def describe(self) -> str:
        return f"{self.listen_path} -> {self.target_kind.value}:{self.target_address}"


@dataclass(slots=True)
class RelayConnection:
    conn_id: int
    endpoint: EndpointKind
    accepted_at: float = field(default_factory=time.time)
    bytes_to_target: int = 0
    bytes_to_client: int = 0

    def count(self, direction: str, n: int) -> None:
        if direction == "to_target":
            self.bytes_to_target += n
        else:
            self.bytes_to_client += n


def unlink_socket(path: Path) -> bool:
    """Remove a socket file or symlink at ``path``; regular files are left alone."""
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return False
    if not (stat.S_ISSOCK(st.st_mode) or stat.S_ISLNK(st.st_mode)):
        raise FileExistsError(f"refusing to remove non-socket file: {path}")
    os.unlink(path)
    return True


class SessionManager:
    def __init__(self) -> None:
        self.logger = logging.getLogger("relay.session")
        self._ids = itertools.count(1)
        self._connections: dict[int, RelayConnection] = {}
        self._lock = asyncio.Lock()

    async def open(self, endpoint: EndpointKind) -> RelayConnection:
        conn = RelayConnection(conn_id=next(self._ids), endpoint=endpoint)
        async with self._lock:
            self._connections[conn.conn_id] = conn
        self.logger.debug("connection opened id=%s endpoint=%s", conn.conn_id, endpoint.value)
        return conn

    async def close(self, conn: RelayConnection) -> None:
        async with self._lock:
            self._connections.pop(conn.conn_id, None)
        self.logger.debug(
            "connection closed id=%s endpoint=%s to_target=%s to_client=%s duration=%.1fs",
            conn.conn_id,
            conn.endpoint.value,
            conn.bytes_to_target,
            conn.bytes_to_client,
            time.time() - conn.accepted_at,
        )

    def active_count(self, endpoint: EndpointKind | None = None) -> int:
        if endpoint is None:
            return len(self._connections)
        return sum(1 for c in self._connections.values() if c.endpoint == endpoint)

    def list(self) -> list[RelayConnection]:
        return list(self._connections.values())


class EndpointRegistry:
    """Holds at most one endpoint per kind; replacing one unlinks its socket first."""

    def __init__(self) -> None:
        self.logger = logging.getLogger("relay.endpoints")
        self._endpoints: dict[EndpointKind, RelayEndpoint] = {}

    def register(self, endpoint: RelayEndpoint) -> RelayEndpoint | None:
        previous = self._endpoints.get(endpoint.kind)
        if previous is not None:
            with contextlib.suppress(OSError):
                unlink_socket(previous.listen_path)
            self.logger.info("replacing endpoint kind=%s old=%s", endpoint.kind.value, previous.listen_path)
        self._endpoints[endpoint.kind] = endpoint
        return previous

    def remove(self, kind: EndpointKind) -> RelayEndpoint | None:
        endpoint = self._endpoints.pop(kind, None)
        if endpoint is not None:
            with contextlib.suppress(OSError):
                unlink_socket(endpoint.listen_path)
        return endpoint

    def get(self, kind: EndpointKind) -> RelayEndpoint | None:
        return self._endpoints.get(kind)

    def kinds(self) -> list[EndpointKind]:
        return list(self._endpoints)

    def clear(self) -> None:
        for kind in list(self._endpoints):
            self.remove(kind)
