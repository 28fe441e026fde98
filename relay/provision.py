"""One-time provisioning for the agent relay (WSL2 and remote SSH hosts).

WSL2: install the pipe-relay helper and the GPG bridge on the Windows side.
Remote: allow sshd to replace stale forwarded sockets for the current user and
print the matching Windows SSH client configuration.

A marker file records completion; delete it (or pass ``--force``) to re-run.
"""
from __future__ import annotations

import argparse
import asyncio
import datetime
import getpass
import logging
import os
import shutil
import sys
import tempfile
import zipfile
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import aiohttp

from common.config import ConfigError, load_config
from common.log import setup_logging
from common.process import CommandResult, run_command
from relay.detect import DEFAULT_POWERSHELL, is_wsl2, runtime_dir, windows_userprofile
from relay.helper import HelperInstaller, HelperInstallError, HelperRelease, sha256_file, verify_checksum
from relay.listener import socket_is_live
from relay.session import unlink_socket

logger = logging.getLogger("relay.provision")

EXTRA_SUFFIX = ".extra"
SSHD_DROPIN = "/etc/ssh/sshd_config.d/50-stream-local-bind-unlink.conf"

DEFAULT_SETUP_CONFIG: dict[str, Any] = {
    "log_level": "info",
    "marker": "~/.cache/devtool-setup.lock",
    "proc_version": "/proc/version",
    "powershell": DEFAULT_POWERSHELL,
    "gnupg_home": None,
    "sshd_dropin": SSHD_DROPIN,
    "install_dir": None,
    "helper": {"retries": 3, "retry_delay": 2.0},
    "gpg_bridge": {
        "repo": "BusyJay/gpg-bridge",
        "version": "v0.1.1",
        "sha256": None,
    },
    "gpg_bridge_port": 4321,
}

Runner = Callable[[list[str], float], Awaitable[CommandResult]]


class SetupMarker:
    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def exists(self) -> bool:
        return self.path.is_file()

    def write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        stamp = datetime.datetime.now().astimezone().isoformat(timespec="seconds")
        self.path.write_text(stamp + "\n", encoding="utf-8")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


def link_gpg_extra_alias(gpg_socket: Path) -> Path | None:
    """Point ``S.gpg-agent.extra`` at ``S.gpg-agent`` in the same directory.

    A live socket already sitting at the alias path (for example one created by
    SSH RemoteForward) is left untouched and ``None`` is returned.
    """
    alias = gpg_socket.with_name(gpg_socket.name + EXTRA_SUFFIX)
    if os.path.islink(alias) and os.readlink(alias) == gpg_socket.name:
        return alias
    if os.path.lexists(alias):
        if not os.path.islink(alias) and socket_is_live(alias):
            logger.info("gpg extra socket is live, keeping it: %s", alias)
            return None
        unlink_socket(alias)
    os.symlink(gpg_socket.name, alias)
    logger.info("gpg extra alias: %s -> %s", alias, gpg_socket.name)
    return alias


def cleanup_gpg_sockets(socket_dir: Path) -> list[Path]:
    """Remove stale (not listening) GPG sockets left by an earlier session."""
    removed: list[Path] = []
    for name in ("S.gpg-agent", "S.gpg-agent" + EXTRA_SUFFIX):
        path = socket_dir / name
        if not os.path.lexists(path) or os.path.islink(path):
            continue
        if socket_is_live(path):
            continue
        unlink_socket(path)
        removed.append(path)
        logger.info("removed stale socket: %s", path)
    return removed


def configure_gpg(gnupg_home: Path) -> bool:
    """Ensure gpg.conf carries ``no-autostart``; returns True when the file changed."""
    gnupg_home.mkdir(parents=True, exist_ok=True)
    os.chmod(gnupg_home, 0o700)
    conf = gnupg_home / "gpg.conf"
    if conf.exists():
        lines = conf.read_text(encoding="utf-8").splitlines()
        if any(line.strip() == "no-autostart" for line in lines):
            logger.info("gpg.conf: 'no-autostart' already set")
            return False
        with conf.open("a", encoding="utf-8") as f:
            if lines and lines[-1] != "":
                f.write("\n")
            f.write("no-autostart\n")
        logger.info("gpg.conf: added 'no-autostart'")
        return True
    conf.write_text("no-autostart\n", encoding="utf-8")
    logger.info("%s: created with 'no-autostart'", conf)
    return True


GPG_AGENT_UNITS = (
    "gpg-agent.service",
    "gpg-agent.socket",
    "gpg-agent-ssh.socket",
    "gpg-agent-extra.socket",
    "gpg-agent-browser.socket",
)


async def mask_gpg_units(runner: Runner = run_command) -> bool:
    """Mask the distro's socket-activated gpg-agent so it cannot hold S.gpg-agent."""
    try:
        result = await runner(["systemctl", "--user", "mask", *GPG_AGENT_UNITS], 30.0)
    except OSError as exc:
        logger.warning("gpg-agent systemd units: not masked: %s", exc)
        return False
    if not result.ok:
        logger.warning("gpg-agent systemd units: not masked: %s", result.output or result.returncode)
        return False
    logger.info("gpg-agent systemd units: masked")
    return True


def sshd_dropin_content(user: str) -> str:
    return (
        f"# Allow StreamLocalBindUnlink for user: {user}\n"
        "# This enables SSH RemoteForward to overwrite existing sockets\n"
        f"Match User {user}\n"
        "    StreamLocalBindUnlink yes\n"
    )


async def configure_sshd(user: str, dropin: str | Path = SSHD_DROPIN, runner: Runner = run_command) -> bool:
    """Write the per-user StreamLocalBindUnlink drop-in and restart sshd."""
    path = Path(dropin)
    if path.is_file() and f"Match User {user}" in path.read_text(encoding="utf-8", errors="replace"):
        logger.info("sshd config: already configured for user %s", user)
        return False
    logger.info("Running sudo to write sshd configuration: %s", path)
    fd, tmp = tempfile.mkstemp(prefix="sshd-dropin-", suffix=".conf")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(sshd_dropin_content(user))
        result = await runner(["sudo", "install", "-m", "0644", tmp, str(path)], 60.0)
        if not result.ok:
            raise RuntimeError(f"writing {path} failed: {result.output or result.returncode}")
    finally:
        Path(tmp).unlink(missing_ok=True)
    logger.info("sshd config: created %s", path)
    restart = await runner(["sudo", "systemctl", "restart", "sshd"], 60.0)
    if not restart.ok:
        raise RuntimeError(f"restarting sshd failed: {restart.output or restart.returncode}")
    logger.info("sshd: restarted")
    return True


def remote_instructions(user: str, socket_dir: Path, port: int = 4321) -> str:
    return "\n".join(
        [
            "Add to your Windows SSH config (~/.ssh/config):",
            "",
            "  Host your-remote-host",
            "      HostName example.com",
            f"      User {user}",
            "      ForwardAgent yes",
            f"      RemoteForward {socket_dir}/S.gpg-agent 127.0.0.1:{port}",
            f"      RemoteForward {socket_dir}/S.gpg-agent{EXTRA_SUFFIX} 127.0.0.1:{port}",
            "",
        ]
    )


async def install_gpg_bridge(cfg: dict[str, Any], install_path: Path) -> str:
    """Install gpg-bridge.exe from its release zip; returns "installed", "updated" or "up_to_date"."""
    version = str(cfg.get("version", "v0.1.1"))
    repo = str(cfg.get("repo", "BusyJay/gpg-bridge"))
    zip_name = f"gpg-bridge-{version}.zip"
    url = str(cfg.get("url") or f"https://github.com/{repo}/releases/download/{version}/{zip_name}")
    with tempfile.TemporaryDirectory(prefix="gpg-bridge-") as tmp:
        archive = Path(tmp) / zip_name
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=120)) as session:
            async with session.get(url) as resp:
                resp.raise_for_status()
                archive.write_bytes(await resp.read())
        with zipfile.ZipFile(archive) as zf:
            member = next((n for n in zf.namelist() if n.endswith("gpg-bridge.exe")), None)
            if member is None:
                raise HelperInstallError(f"{zip_name} does not contain gpg-bridge.exe")
            extracted = Path(zf.extract(member, tmp))
        if cfg.get("sha256"):
            verify_checksum(extracted, str(cfg["sha256"]))
        status = "installed"
        if install_path.exists():
            if sha256_file(install_path) == sha256_file(extracted):
                logger.info("gpg-bridge %s: up to date", version)
                return "up_to_date"
            logger.warning("gpg-bridge: updating to %s", version)
            status = "updated"
        install_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(extracted, install_path)
        os.chmod(install_path, 0o755)
    logger.info("gpg-bridge %s: installed: %s", version, install_path)
    return status


async def setup_wsl2(cfg: dict[str, Any]) -> None:
    if cfg.get("install_dir"):
        install_dir = Path(cfg["install_dir"])
    else:
        install_dir = await windows_userprofile(str(cfg.get("powershell") or DEFAULT_POWERSHELL)) / ".local" / "bin"
    logger.info("Windows install directory: %s", install_dir)
    helper_cfg = cfg.get("helper", {})
    installer = HelperInstaller(
        HelperRelease.from_config(helper_cfg),
        install_dir / "npiperelay.exe",
        retries=int(helper_cfg.get("retries", 3)),
        retry_delay=float(helper_cfg.get("retry_delay", 2.0)),
    )
    await installer.sync()
    await install_gpg_bridge(cfg.get("gpg_bridge", {}), install_dir / "gpg-bridge.exe")
    configure_gpg(_gnupg_home(cfg))
    await mask_gpg_units()
    logger.info("To register the YubiKey tray at Windows startup run: yubikey-tray --add-startup")


async def setup_remote(cfg: dict[str, Any], runner: Runner = run_command) -> str:
    user = getpass.getuser()
    configure_gpg(_gnupg_home(cfg))
    await mask_gpg_units(runner=runner)
    await configure_sshd(user, cfg.get("sshd_dropin", SSHD_DROPIN), runner=runner)
    socket_dir = runtime_dir() / "gnupg"
    cleanup_gpg_sockets(socket_dir)
    text = remote_instructions(user, socket_dir, int(cfg.get("gpg_bridge_port", 4321)))
    print(text)
    return text


def _gnupg_home(cfg: dict[str, Any]) -> Path:
    configured = cfg.get("gnupg_home") or os.environ.get("GNUPGHOME")
    return Path(configured).expanduser() if configured else Path.home() / ".gnupg"


async def run_setup(cfg: dict[str, Any], force: bool = False) -> int:
    marker = SetupMarker(cfg.get("marker", DEFAULT_SETUP_CONFIG["marker"]))
    if marker.exists() and not force:
        logger.info("setup already completed (%s); delete it to re-run", marker.path)
        return 0
    wsl = is_wsl2(cfg.get("proc_version", "/proc/version"))
    logger.info("GPG/SSH Agent Tools Setup (%s)", "WSL2" if wsl else "Remote")
    try:
        if wsl:
            await setup_wsl2(cfg)
        else:
            await setup_remote(cfg)
    except (HelperInstallError, aiohttp.ClientError, RuntimeError, OSError) as exc:
        logger.error("setup failed: %s", exc)
        return 1
    marker.write()
    logger.info("Setup complete! To re-run setup: rm %s", marker.path)
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Provision GPG/SSH agent relay tools")
    parser.add_argument("--config", help="path to setup yaml config")
    parser.add_argument("--force", action="store_true", help="run even if the setup marker exists")
    parser.add_argument("--log-level", help="override log level")
    args = parser.parse_args(argv)
    try:
        cfg = load_config(args.config, DEFAULT_SETUP_CONFIG)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(1)
    setup_logging(args.log_level or cfg.get("log_level", "info"))
    sys.exit(asyncio.run(run_setup(cfg, force=args.force)))


if __name__ == "__main__":
    main()
