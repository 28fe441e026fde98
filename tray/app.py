from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from collections.abc import Callable
from enum import Enum

from tray.indicator import Indicator, IndicatorStatus
from tray.probe import CardProbe
from tray.states import AgentState, CardProbeResult, Effect, TouchStateMachine, Transition
from tray.supervisor import AgentProcessSupervisor, OperationKind, OperationOutcome, RestartFailed

NOTIFY_TITLE = "YubiKey"

STATE_STATUS = {
    AgentState.NORMAL: IndicatorStatus.NORMAL,
    AgentState.TOUCH: IndicatorStatus.TOUCH_REQUIRED,
    AgentState.NO_CARD: IndicatorStatus.NO_CARD,
    AgentState.ERROR: IndicatorStatus.ERROR,
    AgentState.STOPPED: IndicatorStatus.STOPPED,
}


class Command(str, Enum):
    RESTART = "restart"
    STOP = "stop"
    EXIT = "exit"


class TrayApp:
    """Single-threaded polling loop around the touch state machine.

    Every tick performs at most one mutation: a queued user command, the
    completion of a background stop/restart, a touch timeout, or one probe
    result. Menu callbacks from other threads only enqueue commands.
    """

    def __init__(
        self,
        probe: CardProbe,
        supervisor: AgentProcessSupervisor,
        indicator: Indicator,
        machine: TouchStateMachine | None = None,
        interval: float = 2.0,
        ensure_bridge: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = logging.getLogger("tray.app")
        self.probe = probe
        self.supervisor = supervisor
        self.indicator = indicator
        self.machine = machine or TouchStateMachine()
        self.interval = interval
        self.ensure_bridge = ensure_bridge
        self.clock = clock
        self._commands: asyncio.Queue[Command] = asyncio.Queue()
        self._exit = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None

    @property
    def exiting(self) -> bool:
        return self._exit.is_set()

    def enqueue(self, command: Command) -> None:
        loop = self._loop
        if loop is not None and threading.get_ident() != self._loop_thread:
            loop.call_soon_threadsafe(self._commands.put_nowait, command)
        else:
            self._commands.put_nowait(command)

    def current_status(self) -> IndicatorStatus:
        if self.supervisor.current_kind is OperationKind.RESTART:
            return IndicatorStatus.RESTARTING
        if self.machine.state is AgentState.STOPPED:
            return IndicatorStatus.STOPPED
        if self.machine.manual_restart_required:
            return IndicatorStatus.MANUAL_RESTART_REQUIRED
        return STATE_STATUS[self.machine.state]

    def _refresh(self) -> None:
        self.indicator.show(self.current_status())

    async def tick(self) -> None:
        now = self.clock()
        if not self._commands.empty():
            await self._handle_command(self._commands.get_nowait())
            return

        if self.supervisor.busy:
            outcome = self.supervisor.poll()
            if outcome is not None:
                self._finish_operation(outcome, now)
            return

        if self.machine.state is AgentState.STOPPED:
            return

        result: CardProbeResult | None
        if self.probe.in_flight:
            result = await self.probe.poll()
            if result is None:
                return
        else:
            timed_out = self.machine.check_touch_timeout(now)
            if timed_out is not None:
                await self._apply(timed_out)
                return
            result = await self.probe.start()
            if result is None:
                return
        await self._apply(self.machine.on_probe(result, now))

    async def _handle_command(self, command: Command) -> None:
        self.logger.info("command: %s", command.value)
        await self.probe.cancel()
        if command is Command.EXIT:
            await self.supervisor.cancel()
            self._exit.set()
            return
        if command is Command.STOP:
            transition = self.machine.on_stop()
            await self.supervisor.begin_stop()
            self._log_transition(transition)
        else:
            self.machine.on_user_restart()
            await self.supervisor.begin_restart()
        self._refresh()

    def _finish_operation(self, outcome: OperationOutcome, now: float) -> None:
        if outcome.kind is OperationKind.RESTART:
            transition = self.machine.on_restart_finished(outcome.ok, now)
            self._log_transition(transition)
            if not outcome.ok:
                self.indicator.notify(NOTIFY_TITLE, f"gpg-agent restart failed: {outcome.error}")
        elif outcome.ok:
            self.logger.info("gpg-agent and bridge stopped")
        else:
            self.logger.warning("stop did not complete cleanly: %s", outcome.error)
        self._refresh()

    def _log_transition(self, transition: Transition) -> None:
        if transition.entered:
            self.logger.info(
                "state %s -> %s%s",
                transition.previous.value,
                transition.current.value,
                f": {transition.message}" if transition.message else "",
            )
        elif transition.message:
            self.logger.info("%s", transition.message)

    async def _apply(self, transition: Transition) -> None:
        self._log_transition(transition)
        for effect in transition.effects:
            if effect is Effect.NOTIFY_TOUCH:
                self.indicator.notify(NOTIFY_TITLE, "Touch your YubiKey to continue")
            elif effect is Effect.RESTART:
                self.logger.warning("card status failing, restarting gpg-agent (attempt %s)", self.machine.auto_restarts)
                await self.supervisor.begin_restart()
            elif effect is Effect.MANUAL_RESTART_REQUIRED:
                self.logger.error("automatic restarts exhausted, manual restart required")
                self.indicator.notify(NOTIFY_TITLE, "gpg-agent is not responding. Restart it from the tray menu.")
        self._refresh()

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self.indicator.start(self.enqueue)
        self._refresh()
        if self.ensure_bridge and not self.supervisor.bridge.is_alive():
            try:
                await self.supervisor.start_bridge()
            except RestartFailed as exc:
                self.logger.error("%s", exc)
        try:
            while not self._exit.is_set():
                try:
                    await self.tick()
                except Exception:
                    self.logger.exception("tick failed")
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._exit.wait(), timeout=self.interval)
        finally:
            await self.close()

    async def close(self) -> None:
        await self.probe.cancel()
        await self.supervisor.close()
        self.indicator.stop()
