from __future__ import annotations

import copy
import sys

import pytest

from common.config import ConfigError
from tray.indicator import LogIndicator
from tray.main import DEFAULT_TRAY_CONFIG, apply_args, build_app, build_parser
from tray.startup import StartupRegistrationError, add_startup, startup_command


def _cfg(*argv: str) -> dict:
    return apply_args(copy.deepcopy(DEFAULT_TRAY_CONFIG), build_parser().parse_args(list(argv)))


def test_defaults():
    cfg = _cfg()
    assert cfg["interval_ms"] == 2000
    assert cfg["hang_timeout_ms"] == 2000
    assert cfg["bridge"]["args"] == ["--extra", "127.0.0.1:4321"]
    assert cfg["tray"] is True


def test_cli_overrides():
    cfg = _cfg(
        "--interval-ms", "500",
        "--hang-timeout-ms", "1500",
        "--bridge-path", "/opt/gpg-bridge.exe",
        "--bridge-args", "--extra 127.0.0.1:5000",
        "--no-tray",
    )
    assert cfg["interval_ms"] == 500
    assert cfg["hang_timeout_ms"] == 1500
    assert cfg["bridge"]["path"] == "/opt/gpg-bridge.exe"
    assert cfg["bridge"]["args"] == ["--extra", "127.0.0.1:5000"]
    assert cfg["tray"] is False


def test_non_positive_interval_rejected():
    with pytest.raises(ConfigError):
        _cfg("--interval-ms", "0")


def test_build_app_wires_config():
    cfg = _cfg("--interval-ms", "750", "--hang-timeout-ms", "1200", "--no-tray")
    cfg["max_auto_restarts"] = 5
    app = build_app(cfg, LogIndicator())
    assert app.interval == 0.75
    assert app.probe.hang_timeout == 1.2
    assert app.probe.argv == ["gpg", "--card-status"]
    assert app.machine.policy.max_auto_restarts == 5
    assert app.supervisor.bridge.args == ["--extra", "127.0.0.1:4321"]


def test_startup_command_runs_tray_module():
    command = startup_command(["--interval-ms", "1000"], executable="/usr/bin/python3")
    assert command == "/usr/bin/python3 -m tray.main --interval-ms 1000"


def test_startup_command_quotes_paths_with_spaces():
    command = startup_command([], executable="C:/Program Files/Python/python3.exe")
    assert command.startswith('"C:/Program Files/Python/python3.exe"')


@pytest.mark.skipif(sys.platform == "win32", reason="registry is available on Windows")
def test_startup_registration_requires_windows():
    with pytest.raises(StartupRegistrationError):
        add_startup([])
