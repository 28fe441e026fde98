from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path

logger = logging.getLogger("tray.startup")

RUN_KEY = r"Software\Microsoft\Windows\CurrentVersion\Run"
VALUE_NAME = "YubiKeyTray"


class StartupRegistrationError(RuntimeError):
    pass


def gui_python(executable: str = sys.executable) -> str:
    # pythonw.exe runs without a console window.
    path = Path(executable)
    candidate = path.with_name("pythonw.exe")
    if path.name.lower() == "python.exe" and candidate.exists():
        return str(candidate)
    return str(path)


def startup_command(tool_args: list[str], executable: str = sys.executable) -> str:
    return subprocess.list2cmdline([gui_python(executable), "-m", "tray.main", *tool_args])


def _winreg():
    if sys.platform != "win32":
        raise StartupRegistrationError("startup registration is only supported on Windows")
    import winreg

    return winreg


def add_startup(tool_args: list[str]) -> str:
    winreg = _winreg()
    command = startup_command(tool_args)
    with winreg.OpenKey(winreg.HKEY_CURRENT_USER, RUN_KEY, 0, winreg.KEY_SET_VALUE) as key:
        winreg.SetValueEx(key, VALUE_NAME, 0, winreg.REG_SZ, command)
    logger.info("registered at startup: %s", command)
    return command


def remove_startup() -> bool:
    winreg = _winreg()
    with winreg.OpenKey(winreg.HKEY_CURRENT_USER, RUN_KEY, 0, winreg.KEY_SET_VALUE) as key:
        try:
            winreg.DeleteValue(key, VALUE_NAME)
        except FileNotFoundError:
            logger.info("not registered at startup")
            return False
    logger.info("removed from startup")
    return True
