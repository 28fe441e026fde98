from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field

from common.process import kill_process
from relay.session import RelayConnection


class TargetUnavailable(ConnectionError):
    pass


@dataclass(slots=True)
class TargetStream:
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    process: asyncio.subprocess.Process | None = None

    async def close(self, grace: float = 0.5) -> None:
        with contextlib.suppress(Exception):
            self.writer.close()
        with contextlib.suppress(Exception):
            await asyncio.wait_for(self.writer.wait_closed(), timeout=grace)
        if self.process is not None:
            await kill_process(self.process, grace=grace)


@dataclass(slots=True)
class TcpTarget:
    host: str
    port: int
    connect_timeout: float = 5.0

    def describe(self) -> str:
        return f"{self.host}:{self.port}"

    async def open(self) -> TargetStream:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise TargetUnavailable(f"tcp {self.describe()} unreachable: {exc or type(exc).__name__}") from exc
        return TargetStream(reader, writer)


@dataclass(slots=True)
class ExecTarget:
    """A subprocess whose stdin/stdout carry the forwarded byte stream."""

    argv: list[str] = field(default_factory=list)
    # A child that dies this quickly never reached its target.
    startup_check: float = 0.05

    def describe(self) -> str:
        return " ".join(self.argv)

    async def open(self) -> TargetStream:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise TargetUnavailable(f"exec {self.describe()} failed: {exc}") from exc
        if self.startup_check > 0:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(proc.wait(), timeout=self.startup_check)
        if proc.returncode is not None and proc.returncode != 0:
            raise TargetUnavailable(f"exec {self.describe()} exited code={proc.returncode}")
        assert proc.stdout is not None and proc.stdin is not None
        return TargetStream(proc.stdout, proc.stdin, process=proc)


def parse_tcp_target(target: str, connect_timeout: float = 5.0) -> TcpTarget:
    if ":" not in target:
        raise ValueError("target must be host:port")
    host, port = target.rsplit(":", 1)
    return TcpTarget(host=host or "127.0.0.1", port=int(port), connect_timeout=connect_timeout)


class DataBridge:
    def __init__(
        self,
        reader_a: asyncio.StreamReader,
        writer_a: asyncio.StreamWriter,
        reader_b: asyncio.StreamReader,
        writer_b: asyncio.StreamWriter,
        conn: RelayConnection | None = None,
        linger: float = 0.5,
    ):
        self.logger = logging.getLogger("relay.bridge")
        self.reader_a = reader_a
        self.writer_a = writer_a
        self.reader_b = reader_b
        self.writer_b = writer_b
        self.conn = conn
        # After one side reaches EOF the other direction may still deliver a reply.
        self.linger = linger
        self._tasks: list[asyncio.Task[None]] = []

    async def _pipe(self, src: asyncio.StreamReader, dst: asyncio.StreamWriter, direction: str) -> None:
        while True:
            chunk = await src.read(65536)
            if not chunk:
                break
            dst.write(chunk)
            await dst.drain()
            if self.conn is not None:
                self.conn.count(direction, len(chunk))
        if dst.can_write_eof():
            with contextlib.suppress(OSError, RuntimeError):
                dst.write_eof()

    async def run(self) -> None:
        self._tasks = [
            asyncio.create_task(self._pipe(self.reader_a, self.writer_b, "to_target"), name="bridge-a2b"),
            asyncio.create_task(self._pipe(self.reader_b, self.writer_a, "to_client"), name="bridge-b2a"),
        ]
        try:
            done, pending = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
            if pending and self.linger > 0:
                _, pending = await asyncio.wait(pending, timeout=self.linger)
        finally:
            for task in self._tasks:
                if not task.done():
                    task.cancel()
            for task in self._tasks:
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
