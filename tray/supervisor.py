from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from common.process import hidden_window_kwargs, is_running, kill_by_name, kill_process, run_command


class RestartFailed(RuntimeError):
    pass


class OperationKind(str, Enum):
    STOP = "stop"
    RESTART = "restart"


@dataclass(slots=True)
class OperationOutcome:
    kind: OperationKind
    ok: bool
    error: str = ""


@dataclass(slots=True)
class SupervisedProcess:
    name: str
    executable: str
    args: list[str] = field(default_factory=list)
    process_name: str = ""
    handle: asyncio.subprocess.Process | None = None

    @property
    def image_name(self) -> str:
        return self.process_name or os.path.basename(self.executable)

    def owned_alive(self) -> bool:
        return self.handle is not None and self.handle.returncode is None

    def is_alive(self) -> bool:
        return self.owned_alive() or is_running(self.image_name)


@dataclass(slots=True)
class SupervisorTimeouts:
    kill_agent: float = 5.0
    teardown_wait: float = 2.0
    launch_agent: float = 30.0
    initial_probe: float = 60.0
    bridge_verify: float = 1.0


class AgentProcessSupervisor:
    """Stops and restarts gpg-agent and the GPG bridge on a background task.

    Only one operation runs at a time. Beginning a new one cancels the previous
    task and waits for it to finish unwinding first.
    """

    def __init__(
        self,
        bridge: SupervisedProcess,
        gpgconf: str = "gpgconf",
        card_status: list[str] | None = None,
        timeouts: SupervisorTimeouts | None = None,
    ):
        self.logger = logging.getLogger("tray.supervisor")
        self.bridge = bridge
        self.gpgconf = gpgconf
        self.card_status = list(card_status or ["gpg", "--card-status"])
        self.timeouts = timeouts or SupervisorTimeouts()
        self._worker: asyncio.Task[None] | None = None
        self._worker_kind: OperationKind | None = None

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> "AgentProcessSupervisor":
        bridge_cfg = cfg.get("bridge", {})
        t = cfg.get("timeouts", {})
        defaults = SupervisorTimeouts()
        return cls(
            bridge=SupervisedProcess(
                name="gpg-bridge",
                executable=os.path.expanduser(str(bridge_cfg.get("path", "gpg-bridge.exe"))),
                args=[str(a) for a in bridge_cfg.get("args", [])],
                process_name=str(bridge_cfg.get("process_name", "")),
            ),
            gpgconf=str(cfg.get("gpgconf", "gpgconf")),
            card_status=list(cfg.get("card_status", ["gpg", "--card-status"])),
            timeouts=SupervisorTimeouts(
                kill_agent=float(t.get("kill_agent", defaults.kill_agent)),
                teardown_wait=float(t.get("teardown_wait", defaults.teardown_wait)),
                launch_agent=float(t.get("launch_agent", defaults.launch_agent)),
                initial_probe=float(t.get("initial_probe", defaults.initial_probe)),
                bridge_verify=float(t.get("bridge_verify", defaults.bridge_verify)),
            ),
        )

    @property
    def busy(self) -> bool:
        return self._worker is not None

    @property
    def current_kind(self) -> OperationKind | None:
        return self._worker_kind

    async def cancel(self) -> None:
        worker = self._worker
        self._worker = None
        self._worker_kind = None
        if worker is None:
            return
        if not worker.done():
            worker.cancel()
            self.logger.info("cancelling in-flight operation")
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await worker

    async def begin(self, kind: OperationKind) -> asyncio.Task[None]:
        await self.cancel()
        coro = self._restart() if kind is OperationKind.RESTART else self._stop()
        self._worker = asyncio.create_task(coro, name=f"agent-{kind.value}")
        self._worker_kind = kind
        self.logger.info("%s started", kind.value)
        return self._worker

    async def begin_restart(self) -> asyncio.Task[None]:
        return await self.begin(OperationKind.RESTART)

    async def begin_stop(self) -> asyncio.Task[None]:
        return await self.begin(OperationKind.STOP)

    def poll(self) -> OperationOutcome | None:
        """Non-blocking completion check for the in-flight operation."""
        worker = self._worker
        kind = self._worker_kind
        if worker is None or kind is None or not worker.done():
            return None
        self._worker = None
        self._worker_kind = None
        if worker.cancelled():
            return OperationOutcome(kind, ok=False, error="cancelled")
        exc = worker.exception()
        if exc is not None:
            self.logger.error("%s failed: %s", kind.value, exc)
            return OperationOutcome(kind, ok=False, error=str(exc))
        self.logger.info("%s completed", kind.value)
        return OperationOutcome(kind, ok=True)

    async def _kill_bridge(self) -> None:
        if self.bridge.handle is not None:
            await kill_process(self.bridge.handle)
            self.bridge.handle = None
        # A bridge started before this process is only reachable by name.
        killed = await asyncio.to_thread(kill_by_name, self.bridge.image_name)
        if killed:
            self.logger.info("killed %s %s process(es)", killed, self.bridge.image_name)

    async def _stop(self) -> None:
        await self._kill_bridge()
        result = await run_command([self.gpgconf, "--kill", "gpg-agent"], timeout=self.timeouts.kill_agent)
        if result.timed_out:
            self.logger.warning("gpgconf --kill timed out after %.0fs, killed", self.timeouts.kill_agent)
        elif not result.ok:
            self.logger.warning("gpgconf --kill exited code=%s: %s", result.returncode, result.output)

    async def start_bridge(self) -> None:
        if self.bridge.owned_alive():
            return
        try:
            self.bridge.handle = await asyncio.create_subprocess_exec(
                self.bridge.executable,
                *self.bridge.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                **hidden_window_kwargs(),
            )
        except OSError as exc:
            raise RestartFailed(f"cannot start {self.bridge.name}: {exc}") from exc
        await asyncio.sleep(self.timeouts.bridge_verify)
        if not self.bridge.owned_alive():
            code = self.bridge.handle.returncode
            self.bridge.handle = None
            raise RestartFailed(f"{self.bridge.name} exited right after start code={code}")
        self.logger.info("%s started pid=%s", self.bridge.name, self.bridge.handle.pid)

    async def _restart(self) -> None:
        await self._stop()
        await asyncio.sleep(self.timeouts.teardown_wait)

        launch = await run_command([self.gpgconf, "--launch", "gpg-agent"], timeout=self.timeouts.launch_agent)
        if not launch.ok:
            reason = "timed out" if launch.timed_out else f"exited code={launch.returncode} {launch.output}"
            raise RestartFailed(f"gpgconf --launch gpg-agent {reason}")

        try:
            first = await run_command(self.card_status, timeout=self.timeouts.initial_probe)
        except OSError as exc:
            self.logger.warning("initial card status failed to launch: %s", exc)
        else:
            if not first.ok:
                self.logger.warning(
                    "initial card status not ok (timed_out=%s code=%s), card may be absent",
                    first.timed_out,
                    first.returncode,
                )

        await self.start_bridge()

    async def close(self) -> None:
        await self.cancel()
