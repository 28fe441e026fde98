from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import time
from collections.abc import Callable

from common.process import hidden_window_kwargs, kill_process
from tray.states import CardProbeResult

DEFAULT_NO_CARD_PATTERNS = (
    r"card not present",
    r"no such device",
    r"card removed",
    r"no card",
    r"no smartcard",
)


def classify(returncode: int | None, output: str, no_card_patterns: list[re.Pattern[str]]) -> CardProbeResult:
    if returncode == 0:
        return CardProbeResult.NORMAL
    if any(p.search(output) for p in no_card_patterns):
        return CardProbeResult.NO_CARD
    return CardProbeResult.ERROR


class CardProbe:
    """Runs the card status command without ever blocking the caller.

    ``start`` launches the child and returns at once; ``poll`` reports a result
    once the child exits, or kills it and reports ``TOUCH`` once it has run
    longer than the hang timeout.
    """

    def __init__(
        self,
        argv: list[str],
        hang_timeout: float = 2.0,
        no_card_patterns: tuple[str, ...] | list[str] = DEFAULT_NO_CARD_PATTERNS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = logging.getLogger("tray.probe")
        self.argv = list(argv)
        self.hang_timeout = hang_timeout
        self.no_card_patterns = [re.compile(p, re.IGNORECASE) for p in no_card_patterns]
        self.clock = clock
        self._proc: asyncio.subprocess.Process | None = None
        self._output_task: asyncio.Task[tuple[bytes, bytes]] | None = None
        self._started_at = 0.0
        self._finished_at: float | None = None
        self.last_output = ""

    @property
    def in_flight(self) -> bool:
        return self._proc is not None

    async def start(self) -> CardProbeResult | None:
        """Launch a probe; returns ``ERROR`` immediately if it cannot be launched."""
        if self._proc is not None:
            return None
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **hidden_window_kwargs(),
            )
        except OSError as exc:
            self.logger.warning("card probe failed to launch: %s", exc)
            self.last_output = str(exc)
            return CardProbeResult.ERROR
        self._started_at = self.clock()
        self._finished_at = None
        task = asyncio.create_task(self._proc.communicate(), name="card-probe-output")
        task.add_done_callback(self._record_exit)
        self._output_task = task
        return None

    def _record_exit(self, task: asyncio.Task[tuple[bytes, bytes]]) -> None:
        # Ticks can be further apart than the hang timeout; the exit time decides.
        if task is self._output_task:
            self._finished_at = self.clock()

    async def poll(self) -> CardProbeResult | None:
        proc = self._proc
        task = self._output_task
        if proc is None or task is None:
            return None
        if task.done():
            finished_at = self._finished_at if self._finished_at is not None else self.clock()
            self._proc = None
            self._output_task = None
            if finished_at - self._started_at >= self.hang_timeout:
                self.last_output = ""
                return CardProbeResult.TOUCH
            try:
                out, err = task.result()
            except Exception as exc:
                self.last_output = str(exc)
                return CardProbeResult.ERROR
            self.last_output = (out + b"\n" + err).decode(errors="replace").strip()
            return classify(proc.returncode, self.last_output, self.no_card_patterns)
        if self.clock() - self._started_at >= self.hang_timeout:
            await self.cancel()
            self.last_output = ""
            return CardProbeResult.TOUCH
        return None

    async def cancel(self) -> None:
        proc = self._proc
        task = self._output_task
        self._proc = None
        self._output_task = None
        if proc is not None:
            await kill_process(proc)
        if task is not None and not task.done():
            task.cancel()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
