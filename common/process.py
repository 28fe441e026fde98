from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import subprocess
from dataclasses import dataclass

import psutil

logger = logging.getLogger("common.process")


@dataclass(slots=True)
class CommandResult:
    argv: list[str]
    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.returncode == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


def hidden_window_kwargs() -> dict[str, int]:
    # Console children of a windowless tray process would otherwise flash a window.
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    return {}


async def run_command(argv: list[str], timeout: float) -> CommandResult:
    """Run ``argv`` to completion, killing it once ``timeout`` seconds pass.

    Launch failures (missing executable, permission denied) raise ``OSError``.
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        **hidden_window_kwargs(),
    )
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await kill_process(proc)
        return CommandResult(argv=list(argv), returncode=None, timed_out=True)
    except asyncio.CancelledError:
        await kill_process(proc)
        raise
    return CommandResult(
        argv=list(argv),
        returncode=proc.returncode,
        stdout=out.decode(errors="replace"),
        stderr=err.decode(errors="replace"),
    )


async def kill_process(proc: asyncio.subprocess.Process, grace: float = 0.0) -> None:
    if proc.returncode is not None:
        return
    if grace > 0:
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
            return
        except asyncio.TimeoutError:
            pass
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    with contextlib.suppress(Exception):
        await proc.wait()


def _normalize_name(name: str) -> str:
    name = os.path.basename(name).lower()
    if name.endswith(".exe"):
        name = name[:-4]
    return name


def find_processes(name: str) -> list[psutil.Process]:
    wanted = _normalize_name(name)
    found: list[psutil.Process] = []
    for proc in psutil.process_iter(["pid", "name"]):
        proc_name = proc.info.get("name") or ""
        if _normalize_name(proc_name) == wanted and proc.pid != os.getpid():
            found.append(proc)
    return found


def is_running(name: str) -> bool:
    return bool(find_processes(name))


def kill_by_name(name: str, timeout: float = 3.0) -> int:
    """Kill every process whose executable name matches ``name``."""
    procs = find_processes(name)
    for proc in procs:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            proc.kill()
    if procs:
        _, alive = psutil.wait_procs(procs, timeout=timeout)
        for proc in alive:
            logger.warning("process still alive after kill name=%s pid=%s", name, proc.pid)
    return len(procs)


def find_by_cmdline(marker: str, exclude_pids: tuple[int, ...] = ()) -> list[psutil.Process]:
    """Processes whose command line contains ``marker`` as one argument."""
    skip = {os.getpid(), os.getppid(), *exclude_pids}
    found: list[psutil.Process] = []
    for proc in psutil.process_iter(["pid", "cmdline"]):
        if proc.pid in skip:
            continue
        cmdline = proc.info.get("cmdline") or []
        if any(marker == arg or arg.endswith(os.sep + marker) for arg in cmdline):
            found.append(proc)
    return found


def terminate_all(procs: list[psutil.Process], timeout: float = 3.0) -> int:
    for proc in procs:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            proc.terminate()
    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            proc.kill()
    return len(procs)
