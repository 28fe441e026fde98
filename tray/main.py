from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
import sys
from pathlib import Path
from typing import Any

from common.config import ConfigError, load_config
from common.log import setup_logging
from common.process import find_by_cmdline, terminate_all
from tray.app import TrayApp
from tray.indicator import Indicator, LogIndicator
from tray.probe import DEFAULT_NO_CARD_PATTERNS, CardProbe
from tray.startup import StartupRegistrationError, add_startup, remove_startup
from tray.states import RecoveryPolicy, TouchStateMachine
from tray.supervisor import AgentProcessSupervisor

logger = logging.getLogger("tray.main")

INSTANCE_MARKERS = ("tray.main", "yubikey-tray", "yubikey-tray.exe")
STARTUP_FLAGS = ("--add-startup", "--remove-startup", "--stop-all")

DEFAULT_TRAY_CONFIG: dict[str, Any] = {
    "log_level": "info",
    "log_file": None,
    "interval_ms": 2000,
    "hang_timeout_ms": 2000,
    "touch_timeout": 30,
    "unresponsive_window": 60,
    "max_auto_restarts": 3,
    "card_status": ["gpg", "--card-status"],
    "no_card_patterns": list(DEFAULT_NO_CARD_PATTERNS),
    "gpgconf": "gpgconf",
    "bridge": {
        "path": str(Path.home() / ".local" / "bin" / "gpg-bridge.exe"),
        "args": ["--extra", "127.0.0.1:4321"],
        "process_name": "",
    },
    "timeouts": {
        "kill_agent": 5,
        "teardown_wait": 2,
        "launch_agent": 30,
        "initial_probe": 60,
    },
    "tray": True,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="YubiKey touch detector for the Windows tray")
    parser.add_argument("--config", help="path to tray yaml config")
    parser.add_argument("--interval-ms", type=int, help="card status check interval")
    parser.add_argument("--hang-timeout-ms", type=int, help="probe run time treated as waiting for touch")
    parser.add_argument("--bridge-path", help="gpg-bridge executable")
    parser.add_argument("--bridge-args", help="gpg-bridge arguments as one string")
    parser.add_argument("--add-startup", action="store_true", help="register at Windows startup")
    parser.add_argument("--remove-startup", action="store_true", help="unregister from Windows startup")
    parser.add_argument("--stop-all", action="store_true", help="stop all running instances")
    parser.add_argument("--no-tray", action="store_true", help="log state changes instead of showing an icon")
    parser.add_argument("--log-level", help="override log level")
    parser.add_argument("--log-file", help="also write logs to this file")
    return parser


def apply_args(cfg: dict[str, Any], args: argparse.Namespace) -> dict[str, Any]:
    if args.interval_ms is not None:
        cfg["interval_ms"] = args.interval_ms
    if args.hang_timeout_ms is not None:
        cfg["hang_timeout_ms"] = args.hang_timeout_ms
    if args.bridge_path:
        cfg["bridge"]["path"] = args.bridge_path
    if args.bridge_args is not None:
        cfg["bridge"]["args"] = shlex.split(args.bridge_args, posix=sys.platform != "win32")
    if args.no_tray:
        cfg["tray"] = False
    if args.log_level:
        cfg["log_level"] = args.log_level
    if args.log_file:
        cfg["log_file"] = args.log_file
    if int(cfg["interval_ms"]) <= 0 or int(cfg["hang_timeout_ms"]) <= 0:
        raise ConfigError("interval_ms and hang_timeout_ms must be positive")
    return cfg


def build_app(cfg: dict[str, Any], indicator: Indicator) -> TrayApp:
    probe = CardProbe(
        list(cfg["card_status"]),
        hang_timeout=int(cfg["hang_timeout_ms"]) / 1000.0,
        no_card_patterns=list(cfg.get("no_card_patterns") or DEFAULT_NO_CARD_PATTERNS),
    )
    machine = TouchStateMachine(
        RecoveryPolicy(
            touch_timeout=float(cfg["touch_timeout"]),
            unresponsive_window=float(cfg["unresponsive_window"]),
            max_auto_restarts=int(cfg["max_auto_restarts"]),
        )
    )
    return TrayApp(
        probe,
        AgentProcessSupervisor.from_config(cfg),
        indicator,
        machine=machine,
        interval=int(cfg["interval_ms"]) / 1000.0,
    )


def stop_all_instances() -> int:
    procs = []
    seen: set[int] = set()
    for marker in INSTANCE_MARKERS:
        for proc in find_by_cmdline(marker):
            if proc.pid not in seen:
                seen.add(proc.pid)
                procs.append(proc)
    count = terminate_all(procs)
    logger.info("stopped %s running instance(s)", count)
    return count


def _make_indicator(cfg: dict[str, Any]) -> Indicator:
    if not cfg.get("tray", True):
        return LogIndicator()
    from tray.icon import TrayIcon

    return TrayIcon()


def main(argv: list[str] | None = None) -> None:
    raw_args = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(raw_args)
    try:
        cfg = apply_args(load_config(args.config, DEFAULT_TRAY_CONFIG), args)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(2)
    setup_logging(cfg.get("log_level", "info"), cfg.get("log_file"))

    if args.stop_all or args.add_startup or args.remove_startup:
        try:
            if args.stop_all:
                stop_all_instances()
            if args.remove_startup:
                remove_startup()
            if args.add_startup:
                add_startup([a for a in raw_args if a not in STARTUP_FLAGS])
        except (StartupRegistrationError, OSError) as exc:
            logger.error("%s", exc)
            sys.exit(1)
        return

    app = build_app(cfg, _make_indicator(cfg))
    asyncio.run(app.run())


if __name__ == "__main__":
    main()
