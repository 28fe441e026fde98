from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
import struct
from pathlib import Path
from typing import Any, Protocol

from relay.bridge import DataBridge, TargetStream, TargetUnavailable
from relay.session import RelayEndpoint, SessionManager, unlink_socket

SOCKET_MODE = 0o600
DIRECTORY_MODE = 0o700


class ListenerInUseError(OSError):
    pass


class BridgeTarget(Protocol):
    def describe(self) -> str: ...

    async def open(self) -> TargetStream: ...


def socket_is_live(path: Path, timeout: float = 0.5) -> bool:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(str(path))
    except OSError:
        return False
    finally:
        sock.close()
    return True


def prepare_socket_path(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    os.chmod(path.parent, DIRECTORY_MODE)
    if not os.path.lexists(path):
        return
    if socket_is_live(path):
        raise ListenerInUseError(f"socket already served by a live listener: {path}")
    unlink_socket(path)


def _reset(writer: asyncio.StreamWriter) -> None:
    sock = writer.get_extra_info("socket")
    if sock is not None:
        # Zero linger turns close() into an immediate reset for the peer.
        with contextlib.suppress(OSError):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
    writer.close()


class UnixRelayListener:
    def __init__(
        self,
        endpoint: RelayEndpoint,
        target: BridgeTarget,
        session_manager: SessionManager,
        shutdown_grace: float = 2.0,
        linger: float = 0.5,
    ):
        self.logger = logging.getLogger("relay.listener")
        self.endpoint = endpoint
        self.target = target
        self.session_manager = session_manager
        self.shutdown_grace = shutdown_grace
        self.linger = linger
        self._server: asyncio.AbstractServer | None = None
        self._session_tasks: set[asyncio.Task[Any]] = set()
        self._closing = False

    @property
    def path(self) -> Path:
        return self.endpoint.listen_path

    @property
    def serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> None:
        prepare_socket_path(self.path)
        old_umask = os.umask(0o177)
        try:
            self._server = await asyncio.start_unix_server(self._handle, path=str(self.path))
        finally:
            os.umask(old_umask)
        os.chmod(self.path, SOCKET_MODE)
        self.logger.info("listening kind=%s %s", self.endpoint.kind.value, self.endpoint.describe())

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if self._closing or task is None:
            writer.close()
            return
        self._session_tasks.add(task)
        conn = await self.session_manager.open(self.endpoint.kind)
        target: TargetStream | None = None
        try:
            try:
                target = await self.target.open()
            except TargetUnavailable as exc:
                self.logger.warning("target unavailable kind=%s id=%s err=%s", self.endpoint.kind.value, conn.conn_id, exc)
                _reset(writer)
                return
            bridge = DataBridge(reader, writer, target.reader, target.writer, conn=conn, linger=self.linger)
            await bridge.run()
        except Exception as exc:
            self.logger.warning("session failed kind=%s id=%s err=%s", self.endpoint.kind.value, conn.conn_id, exc)
        finally:
            if target is not None:
                await target.close()
            writer.close()
            with contextlib.suppress(Exception):
                await asyncio.wait_for(writer.wait_closed(), timeout=0.5)
            await self.session_manager.close(conn)
            self._session_tasks.discard(task)

    async def close(self) -> None:
        self._closing = True
        server = self._server
        self._server = None
        if server is not None:
            server.close()
        tasks = list(self._session_tasks)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.shutdown_grace)
            for task in pending:
                task.cancel()
            for task in pending:
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await asyncio.wait_for(task, timeout=self.shutdown_grace)
            if pending:
                self.logger.info("closed %s lingering sessions kind=%s", len(pending), self.endpoint.kind.value)
        if server is not None:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(server.wait_closed(), timeout=self.shutdown_grace)
        with contextlib.suppress(OSError):
            unlink_socket(self.path)
        self.logger.info("listener closed kind=%s path=%s", self.endpoint.kind.value, self.path)
