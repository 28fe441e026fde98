from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from common.config import ConfigError, load_config
from common.log import setup_logging
from relay.bridge import ExecTarget, TcpTarget
from relay.detect import (
    DEFAULT_POWERSHELL,
    helper_is_executable,
    is_wsl2,
    probe_helper,
    probe_tcp,
    runtime_dir,
    windows_gpg_socket,
    windows_userprofile,
)
from relay.helper import HelperInstaller, HelperInstallError, HelperRelease
from relay.listener import BridgeTarget, ListenerInUseError, UnixRelayListener
from relay.provision import link_gpg_extra_alias
from relay.session import EndpointKind, EndpointRegistry, RelayEndpoint, SessionManager, TargetKind

EXIT_OK = 0
EXIT_FAILURE = 1

DEFAULT_CONFIG: dict[str, Any] = {
    "log_level": "info",
    "runtime_dir": None,
    "proc_version": "/proc/version",
    "probe_timeout": 1.0,
    "connect_timeout": 5.0,
    "shutdown_grace": 2.0,
    "powershell": DEFAULT_POWERSHELL,
    "gpg": {
        "host": "127.0.0.1",
        "port": 4321,
        "windows_socket": None,
        "gpgconf": "gpgconf.exe",
    },
    "ssh": {
        "named_pipe": "//./pipe/openssh-ssh-agent",
    },
    "helper": {
        "path": None,
        "install": True,
        "retries": 3,
        "retry_delay": 2.0,
    },
}

GPG_PORT_ENV = "AGENT_RELAY_GPG_PORT"


class NoRelaysStarted(RuntimeError):
    pass


@dataclass(slots=True)
class RelayPlan:
    endpoint: RelayEndpoint
    target: BridgeTarget


def build_config(path: str | None, environ: dict[str, str] | None = None) -> dict[str, Any]:
    cfg = load_config(path, DEFAULT_CONFIG)
    env = os.environ if environ is None else environ
    port = env.get(GPG_PORT_ENV, "").strip()
    if port:
        try:
            cfg["gpg"]["port"] = int(port)
        except ValueError as exc:
            raise ConfigError(f"{GPG_PORT_ENV} must be an integer: {port!r}") from exc
    return cfg


class RelayApp:
    def __init__(self, config: dict[str, Any]):
        self.logger = logging.getLogger("relay.main")
        self.config = config
        self.mode = "unknown"
        self.session_manager = SessionManager()
        self.registry = EndpointRegistry()
        self.listeners: list[UnixRelayListener] = []
        self.skipped: list[str] = []
        self._alias: Path | None = None
        self._stop_event = asyncio.Event()
        self._shutdown_lock = asyncio.Lock()
        self._shutdown_done = False

    @property
    def socket_root(self) -> Path:
        configured = self.config.get("runtime_dir")
        return Path(configured) if configured else runtime_dir()

    @property
    def gpg_socket(self) -> Path:
        return self.socket_root / "gnupg" / "S.gpg-agent"

    @property
    def ssh_socket(self) -> Path:
        return self.socket_root / "ssh" / "agent.sock"

    def _skip(self, reason: str) -> None:
        self.skipped.append(reason)
        self.logger.info(reason)

    async def _resolve_helper(self) -> Path | None:
        helper_cfg = self.config["helper"]
        if helper_cfg.get("path"):
            return Path(helper_cfg["path"])
        try:
            profile = await windows_userprofile(str(self.config.get("powershell") or DEFAULT_POWERSHELL))
        except (OSError, RuntimeError) as exc:
            self.logger.warning("cannot locate Windows profile: %s", exc)
            return None
        return profile / ".local" / "bin" / "npiperelay.exe"

    async def _prepare_helper(self) -> Path | None:
        helper = await self._resolve_helper()
        if helper is None:
            return None
        helper_cfg = self.config["helper"]
        if not helper.exists() and helper_cfg.get("install", True):
            installer = HelperInstaller(
                HelperRelease.from_config(helper_cfg),
                helper,
                retries=int(helper_cfg.get("retries", 3)),
                retry_delay=float(helper_cfg.get("retry_delay", 2.0)),
            )
            # Integrity failures propagate: an unverified helper is never used.
            await installer.ensure_installed()
        return helper

    async def _plan_gpg(self, wsl: bool, helper: Path | None) -> RelayPlan | None:
        gpg_cfg = self.config["gpg"]
        host = str(gpg_cfg.get("host", "127.0.0.1"))
        port = int(gpg_cfg["port"])
        timeout = float(self.config.get("probe_timeout", 1.0))
        if await probe_tcp(host, port, timeout=timeout):
            endpoint = RelayEndpoint(EndpointKind.GPG_AGENT, self.gpg_socket, TargetKind.TCP_ADDRESS, f"{host}:{port}")
            target = TcpTarget(host, port, connect_timeout=float(self.config.get("connect_timeout", 5.0)))
            return RelayPlan(endpoint, target)
        if not wsl or helper is None:
            self._skip(f"GPG relay skipped: RemoteForward port {port} not available")
            return None
        win_socket = gpg_cfg.get("windows_socket") or await windows_gpg_socket(str(gpg_cfg.get("gpgconf", "gpgconf.exe")))
        if not win_socket:
            self._skip(f"GPG relay skipped: port {port} not available and no Windows gpg-agent socket found")
            return None
        ok, reason = await probe_helper(helper, ["-a", str(win_socket)], timeout=timeout)
        if not ok:
            self._skip(f"GPG relay skipped: port {port} not available and {reason}")
            return None
        endpoint = RelayEndpoint(EndpointKind.GPG_AGENT, self.gpg_socket, TargetKind.SUBPROCESS_EXEC, str(win_socket))
        return RelayPlan(endpoint, ExecTarget([str(helper), "-ei", "-ep", "-a", str(win_socket)]))

    async def _plan_ssh(self, wsl: bool, helper: Path | None) -> RelayPlan | None:
        if not wsl:
            self._skip("SSH relay skipped: Not running on WSL2")
            return None
        pipe = str(self.config["ssh"]["named_pipe"])
        if helper is None or not helper_is_executable(helper):
            self._skip(f"SSH relay skipped: pipe-relay helper not available for {pipe}")
            return None
        ok, reason = await probe_helper(helper, [pipe], timeout=float(self.config.get("probe_timeout", 1.0)))
        if not ok:
            self._skip(f"SSH relay skipped: Named pipe {pipe} not available ({reason})")
            return None
        endpoint = RelayEndpoint(EndpointKind.SSH_AGENT, self.ssh_socket, TargetKind.NAMED_PIPE, pipe)
        return RelayPlan(endpoint, ExecTarget([str(helper), "-ei", "-ep", "-s", pipe]))

    async def plan(self) -> list[RelayPlan]:
        wsl = is_wsl2(self.config.get("proc_version", "/proc/version"))
        self.mode = "wsl2" if wsl else "remote"
        self.logger.info("environment mode=%s", self.mode)
        helper = await self._prepare_helper() if wsl else None
        plans: list[RelayPlan] = []
        for planned in (await self._plan_gpg(wsl, helper), await self._plan_ssh(wsl, helper)):
            if planned is not None:
                plans.append(planned)
        return plans

    async def start(self) -> None:
        plans = await self.plan()
        if not plans:
            self.logger.error("No relays started. Exiting.")
            raise NoRelaysStarted("no relays started")
        grace = float(self.config.get("shutdown_grace", 2.0))
        for planned in plans:
            self.registry.register(planned.endpoint)
            listener = UnixRelayListener(planned.endpoint, planned.target, self.session_manager, shutdown_grace=grace)
            try:
                await listener.start()
            except (ListenerInUseError, OSError) as exc:
                self.registry.remove(planned.endpoint.kind)
                self._skip(f"{planned.endpoint.kind.value} relay skipped: {exc}")
                continue
            self.listeners.append(listener)
            self.logger.info("%s relay started: %s", planned.endpoint.kind.value, planned.endpoint.describe())
            if planned.endpoint.kind == EndpointKind.GPG_AGENT:
                try:
                    self._alias = link_gpg_extra_alias(planned.endpoint.listen_path)
                except OSError as exc:
                    self._alias = None
                    self._skip(f"gpg-agent-extra alias skipped: {exc}")
                if self._alias is not None:
                    self.registry.register(
                        RelayEndpoint(
                            EndpointKind.GPG_AGENT_EXTRA,
                            self._alias,
                            planned.endpoint.target_kind,
                            planned.endpoint.target_address,
                        )
                    )
        if not self.listeners:
            self.logger.error("No relays started. Exiting.")
            await self.shutdown()
            raise NoRelaysStarted("no relay listener could be started")

    def request_stop(self) -> None:
        self.logger.info("stop requested")
        self._stop_event.set()

    async def wait(self) -> None:
        await self._stop_event.wait()

    async def shutdown(self) -> None:
        async with self._shutdown_lock:
            if self._shutdown_done:
                return
            self._shutdown_done = True
            self._stop_event.set()
            for listener in self.listeners:
                with contextlib.suppress(Exception):
                    await listener.close()
            self.listeners.clear()
            self.registry.clear()


def _install_signal_handlers(app: RelayApp) -> None:
    # Handlers only wake the main task; run_relay performs the shutdown.
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.request_stop)
        except NotImplementedError:
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(app.request_stop))


async def run_relay(cfg: dict[str, Any]) -> int:
    logger = logging.getLogger("relay.main")
    app = RelayApp(cfg)
    try:
        await app.start()
    except NoRelaysStarted:
        return EXIT_FAILURE
    except HelperInstallError as exc:
        logger.error("relay setup failed: %s", exc)
        await app.shutdown()
        return EXIT_FAILURE
    _install_signal_handlers(app)
    logger.info("Relay(s) running. Press Ctrl+C to stop.")
    try:
        await app.wait()
    finally:
        await app.shutdown()
    return EXIT_OK


async def _amain(args: argparse.Namespace) -> int:
    try:
        cfg = build_config(args.config)
    except ConfigError as exc:
        setup_logging("info")
        logging.getLogger("relay.main").error("%s", exc)
        return EXIT_FAILURE
    setup_logging(args.log_level or cfg.get("log_level", "info"))
    return await run_relay(cfg)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="GPG/SSH agent relay for WSL2 and remote hosts")
    parser.add_argument("--config", help="path to relay yaml config")
    parser.add_argument("--log-level", help="override log level (debug, info, warning)")
    args = parser.parse_args(argv)
    sys.exit(asyncio.run(_amain(args)))


if __name__ == "__main__":
    main()
