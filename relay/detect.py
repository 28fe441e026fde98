from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
from pathlib import Path

from common.process import run_command

logger = logging.getLogger("relay.detect")

WSL_MARKER = re.compile(r"microsoft|wsl", re.IGNORECASE)
DEFAULT_POWERSHELL = "/mnt/c/Windows/System32/WindowsPowerShell/v1.0/powershell.exe"


def is_wsl2(proc_version: str | Path = "/proc/version") -> bool:
    try:
        text = Path(proc_version).read_text(encoding="utf-8", errors="replace")
    except OSError:
        # Unknown kernel: remote mode is the less invasive choice.
        return False
    return bool(WSL_MARKER.search(text))


def runtime_dir() -> Path:
    value = os.environ.get("XDG_RUNTIME_DIR", "").strip()
    if value:
        return Path(value)
    return Path("/run/user") / str(os.getuid())


def fixpath(raw: str) -> str:
    return raw.replace("\r", "").strip().replace("\\", "/")


async def probe_tcp(host: str, port: int, timeout: float = 1.0) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(Exception):
        await writer.wait_closed()
    return True


def helper_is_executable(helper: str | Path) -> bool:
    p = Path(helper)
    return p.is_file() and os.access(p, os.X_OK)


async def probe_helper(helper: str | Path, target_args: list[str], timeout: float = 1.0) -> tuple[bool, str]:
    """Ask the pipe-relay helper whether it can reach a pipe or socket.

    Returns ``(ok, reason)`` where ``reason`` explains a failed probe.
    """
    if not helper_is_executable(helper):
        return False, f"helper {helper} missing or not executable"
    try:
        result = await run_command([str(helper), "-q", *target_args], timeout=timeout)
    except OSError as exc:
        return False, f"helper {helper} failed to launch: {exc}"
    if result.timed_out:
        return False, f"helper probe timed out after {timeout:.1f}s"
    if result.returncode != 0:
        return False, f"helper probe exited code={result.returncode}"
    return True, ""


async def windows_userprofile(powershell: str = DEFAULT_POWERSHELL, timeout: float = 10.0) -> Path:
    result = await run_command([powershell, "-NoProfile", "-c", "$env:USERPROFILE"], timeout=timeout)
    if not result.ok or not result.stdout.strip():
        raise RuntimeError(f"cannot resolve Windows USERPROFILE: {result.output or 'no output'}")
    converted = await run_command(["wslpath", "-u", fixpath(result.stdout)], timeout=timeout)
    if not converted.ok:
        raise RuntimeError(f"wslpath failed: {converted.output}")
    return Path(converted.stdout.strip())


async def windows_gpg_socket(gpgconf: str = "gpgconf.exe", timeout: float = 10.0) -> str | None:
    """Windows path of the gpg-agent extra socket, as reported by gpgconf.exe."""
    try:
        result = await run_command([gpgconf, "--list-dirs", "agent-extra-socket"], timeout=timeout)
    except OSError as exc:
        logger.debug("gpgconf.exe unavailable: %s", exc)
        return None
    if not result.ok:
        return None
    return fixpath(result.stdout) or None
