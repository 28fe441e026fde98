from __future__ import annotations

import asyncio
import os
import shutil
import stat

import pytest

from common.process import CommandResult
from conftest import stale_socket
from relay.provision import (
    SetupMarker,
    cleanup_gpg_sockets,
    configure_gpg,
    configure_sshd,
    link_gpg_extra_alias,
    mask_gpg_units,
    remote_instructions,
    run_setup,
    setup_remote,
)


class FakeRunner:
    """Records sudo invocations and performs the install step locally."""

    def __init__(self, fail_on: str | None = None):
        self.calls: list[list[str]] = []
        self.fail_on = fail_on

    async def __call__(self, argv: list[str], timeout: float) -> CommandResult:
        self.calls.append(list(argv))
        if self.fail_on and self.fail_on in argv:
            return CommandResult(argv=argv, returncode=1, stderr="sudo: a password is required")
        if argv[:2] == ["sudo", "install"]:
            shutil.copyfile(argv[-2], argv[-1])
        return CommandResult(argv=argv, returncode=0)


def test_setup_marker_lifecycle(tmp_path):
    marker = SetupMarker(tmp_path / "cache" / "devtool-setup.lock")
    assert not marker.exists()
    marker.write()
    assert marker.exists()
    assert marker.path.read_text().strip()
    marker.clear()
    assert not marker.exists()


def test_configure_gpg_adds_no_autostart_once(tmp_path):
    home = tmp_path / "gnupg"
    assert configure_gpg(home) is True
    assert (home / "gpg.conf").read_text() == "no-autostart\n"
    assert stat.S_IMODE(os.stat(home).st_mode) == 0o700

    assert configure_gpg(home) is False
    assert (home / "gpg.conf").read_text().count("no-autostart") == 1


def test_configure_gpg_appends_to_existing_conf(tmp_path):
    home = tmp_path / "gnupg"
    home.mkdir()
    (home / "gpg.conf").write_text("keyid-format long")
    assert configure_gpg(home) is True
    assert (home / "gpg.conf").read_text() == "keyid-format long\nno-autostart\n"


def test_configure_sshd_writes_dropin_and_restarts(tmp_path):
    dropin = tmp_path / "50-stream-local-bind-unlink.conf"
    runner = FakeRunner()

    assert asyncio.run(configure_sshd("alice", dropin, runner=runner)) is True
    text = dropin.read_text()
    assert "Match User alice" in text
    assert "StreamLocalBindUnlink yes" in text
    assert runner.calls[-1] == ["sudo", "systemctl", "restart", "sshd"]

    runner.calls.clear()
    assert asyncio.run(configure_sshd("alice", dropin, runner=runner)) is False
    assert runner.calls == []


def test_configure_sshd_reports_sudo_failure(tmp_path):
    dropin = tmp_path / "dropin.conf"
    with pytest.raises(RuntimeError):
        asyncio.run(configure_sshd("alice", dropin, runner=FakeRunner(fail_on="install")))
    assert not dropin.exists()


def test_extra_alias_points_at_main_socket(sock_dir):
    gpg_socket = sock_dir / "gnupg" / "S.gpg-agent"
    gpg_socket.parent.mkdir()
    alias = link_gpg_extra_alias(gpg_socket)
    assert alias == gpg_socket.with_name("S.gpg-agent.extra")
    assert os.readlink(alias) == "S.gpg-agent"
    # idempotent
    assert link_gpg_extra_alias(gpg_socket) == alias


def test_stale_extra_socket_is_replaced_by_alias(sock_dir):
    gpg_socket = sock_dir / "gnupg" / "S.gpg-agent"
    stale_socket(gpg_socket.with_name("S.gpg-agent.extra"))
    alias = link_gpg_extra_alias(gpg_socket)
    assert alias is not None and os.path.islink(alias)


def test_cleanup_removes_only_stale_sockets(sock_dir):
    socket_dir = sock_dir / "gnupg"
    stale_socket(socket_dir / "S.gpg-agent")
    stale_socket(socket_dir / "S.gpg-agent.extra")
    removed = cleanup_gpg_sockets(socket_dir)
    assert sorted(p.name for p in removed) == ["S.gpg-agent", "S.gpg-agent.extra"]
    assert cleanup_gpg_sockets(socket_dir) == []


def test_remote_instructions_name_both_forwards(tmp_path):
    text = remote_instructions("alice", tmp_path / "gnupg", 4321)
    assert "User alice" in text
    assert f"RemoteForward {tmp_path}/gnupg/S.gpg-agent 127.0.0.1:4321" in text
    assert f"RemoteForward {tmp_path}/gnupg/S.gpg-agent.extra 127.0.0.1:4321" in text


def test_run_setup_skips_when_marker_exists(tmp_path):
    marker = tmp_path / "devtool-setup.lock"
    marker.write_text("done\n")
    cfg = {"marker": str(marker), "proc_version": str(tmp_path / "missing")}
    assert asyncio.run(run_setup(cfg)) == 0
    assert marker.read_text() == "done\n"


def test_mask_gpg_units_masks_socket_activation():
    runner = FakeRunner()
    assert asyncio.run(mask_gpg_units(runner=runner)) is True
    argv = runner.calls[0]
    assert argv[:3] == ["systemctl", "--user", "mask"]
    assert "gpg-agent.socket" in argv and "gpg-agent-extra.socket" in argv


def test_mask_gpg_units_failure_is_not_fatal():
    assert asyncio.run(mask_gpg_units(runner=FakeRunner(fail_on="mask"))) is False

    async def missing_systemctl(argv, timeout):
        raise FileNotFoundError("systemctl")

    assert asyncio.run(mask_gpg_units(runner=missing_systemctl)) is False


def test_remote_setup_masks_units_before_sshd(tmp_path, sock_dir, monkeypatch):
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(sock_dir))
    runner = FakeRunner(fail_on="mask")
    cfg = {"gnupg_home": str(tmp_path / "gnupg"), "sshd_dropin": str(tmp_path / "dropin.conf")}

    text = asyncio.run(setup_remote(cfg, runner=runner))

    assert runner.calls[0][:3] == ["systemctl", "--user", "mask"]
    assert ["sudo", "systemctl", "restart", "sshd"] in runner.calls
    assert (tmp_path / "dropin.conf").exists()
    assert "RemoteForward" in text
