from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import signal

import pytest
from aiohttp import web

from common.config import ConfigError, merge_defaults
from conftest import free_port
from relay.main import DEFAULT_CONFIG, EXIT_FAILURE, EXIT_OK, NoRelaysStarted, RelayApp, build_config, run_relay
from relay.session import EndpointKind

WSL_VERSION = "Linux version 5.15.153.1-microsoft-standard-WSL2\n"
REMOTE_VERSION = "Linux version 6.1.0-18-amd64\n"

# Answers the -q probe and otherwise relays stdio like the real helper.
FAKE_HELPER = 'for a in "$@"; do test "$a" = "-q" && exit 0; done\nexec cat\n'


def _config(sock_dir, tmp_path, kernel: str, **overrides) -> dict:
    version = tmp_path / "version"
    version.write_text(kernel)
    base = {
        "runtime_dir": str(sock_dir),
        "proc_version": str(version),
        "probe_timeout": 1.0,
        "connect_timeout": 1.0,
        "shutdown_grace": 0.5,
        "gpg": {"port": free_port()},
    }
    return merge_defaults(DEFAULT_CONFIG, merge_defaults(base, overrides))


def test_wsl2_starts_both_relays(sock_dir, tmp_path, make_script):
    helper = make_script("npiperelay.exe", FAKE_HELPER)
    cfg = _config(
        sock_dir,
        tmp_path,
        WSL_VERSION,
        gpg={"windows_socket": "C:/Users/me/AppData/Local/gnupg/S.gpg-agent"},
        helper={"path": str(helper), "install": False},
    )

    async def scenario() -> tuple[RelayApp, bytes]:
        app = RelayApp(cfg)
        await app.start()
        try:
            assert app.mode == "wsl2"
            assert set(app.registry.kinds()) == {
                EndpointKind.GPG_AGENT,
                EndpointKind.GPG_AGENT_EXTRA,
                EndpointKind.SSH_AGENT,
            }
            reader, writer = await asyncio.open_unix_connection(str(app.ssh_socket))
            writer.write(b"ssh-agent request\n")
            await writer.drain()
            reply = await asyncio.wait_for(reader.readline(), timeout=3)
            writer.close()
            return app, reply
        finally:
            await app.shutdown()

    app, reply = asyncio.run(scenario())
    assert reply == b"ssh-agent request\n"
    assert app.skipped == []
    assert not os.path.lexists(app.ssh_socket)
    assert not os.path.lexists(app.gpg_socket)


def test_remote_host_relays_gpg_only(sock_dir, tmp_path, caplog):
    caplog.set_level(logging.INFO)

    async def scenario() -> tuple[int, bool, bool]:
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        cfg = _config(sock_dir, tmp_path, REMOTE_VERSION, gpg={"port": port})
        alias = sock_dir / "gnupg" / "S.gpg-agent.extra"
        task = asyncio.create_task(run_relay(cfg))
        for _ in range(100):
            if os.path.islink(alias):
                break
            await asyncio.sleep(0.02)
        await asyncio.sleep(0.1)
        gpg_live = os.path.exists(sock_dir / "gnupg" / "S.gpg-agent")
        ssh_present = os.path.lexists(sock_dir / "ssh" / "agent.sock")
        os.kill(os.getpid(), signal.SIGTERM)
        code = await asyncio.wait_for(task, timeout=5)
        server.close()
        await server.wait_closed()
        return code, gpg_live, ssh_present

    code, gpg_live, ssh_present = asyncio.run(scenario())
    assert code == EXIT_OK
    assert gpg_live is True
    assert ssh_present is False
    assert "SSH relay skipped: Not running on WSL2" in caplog.text
    assert not os.path.lexists(sock_dir / "gnupg" / "S.gpg-agent")


def test_nothing_available_exits_with_failure(sock_dir, tmp_path, caplog):
    caplog.set_level(logging.INFO)
    cfg = _config(sock_dir, tmp_path, REMOTE_VERSION)
    port = cfg["gpg"]["port"]

    assert asyncio.run(run_relay(cfg)) == EXIT_FAILURE
    assert f"GPG relay skipped: RemoteForward port {port} not available" in caplog.text
    assert "SSH relay skipped: Not running on WSL2" in caplog.text
    assert "No relays started. Exiting." in caplog.text
    assert not os.path.lexists(sock_dir / "gnupg" / "S.gpg-agent")
    assert not os.path.lexists(sock_dir / "ssh" / "agent.sock")


def test_start_raises_before_creating_sockets(sock_dir, tmp_path):
    cfg = _config(sock_dir, tmp_path, REMOTE_VERSION)

    async def scenario() -> None:
        app = RelayApp(cfg)
        with pytest.raises(NoRelaysStarted):
            await app.start()
        assert app.listeners == []

    asyncio.run(scenario())
    assert not (sock_dir / "gnupg").exists()


def test_unverified_helper_aborts_relay(sock_dir, tmp_path):
    helper = tmp_path / "win" / "npiperelay.exe"
    payload = b"tampered helper"
    manifest = f"{hashlib.sha256(b'genuine helper').hexdigest()}  npiperelay_windows_amd64.exe\n".encode()

    async def scenario() -> int:
        async def handler(request: web.Request) -> web.Response:
            if request.match_info["name"] == "npiperelay_checksums.txt":
                return web.Response(body=manifest)
            return web.Response(body=payload)

        app = web.Application()
        app.router.add_get("/{name}", handler)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", 0)
        await site.start()
        host, port = runner.addresses[0][:2]
        cfg = _config(
            sock_dir,
            tmp_path,
            WSL_VERSION,
            helper={"path": str(helper), "install": True, "retries": 0, "base_url": f"http://{host}:{port}"},
        )
        try:
            return await run_relay(cfg)
        finally:
            await runner.cleanup()

    assert asyncio.run(scenario()) == EXIT_FAILURE
    assert not helper.exists()
    assert not os.path.lexists(sock_dir / "ssh" / "agent.sock")


def test_missing_named_pipe_skips_ssh(sock_dir, tmp_path, make_script, caplog):
    caplog.set_level(logging.INFO)
    helper = make_script("npiperelay.exe", "exit 1\n")
    cfg = _config(
        sock_dir,
        tmp_path,
        WSL_VERSION,
        gpg={"windows_socket": "C:/gnupg/S.gpg-agent"},
        helper={"path": str(helper), "install": False},
    )

    async def scenario() -> list[str]:
        app = RelayApp(cfg)
        with pytest.raises(NoRelaysStarted):
            await app.start()
        return app.skipped

    skipped = asyncio.run(scenario())
    assert any(s.startswith("SSH relay skipped: Named pipe //./pipe/openssh-ssh-agent not available") for s in skipped)
    assert any(s.startswith("GPG relay skipped") for s in skipped)


def test_build_config_applies_port_override(tmp_path):
    path = tmp_path / "relay.yaml"
    path.write_text("gpg:\n  port: 5000\nssh:\n  named_pipe: //./pipe/custom\n")

    cfg = build_config(str(path), environ={})
    assert cfg["gpg"]["port"] == 5000
    assert cfg["gpg"]["host"] == "127.0.0.1"
    assert cfg["ssh"]["named_pipe"] == "//./pipe/custom"

    cfg = build_config(str(path), environ={"AGENT_RELAY_GPG_PORT": "6000"})
    assert cfg["gpg"]["port"] == 6000

    with pytest.raises(ConfigError):
        build_config(None, environ={"AGENT_RELAY_GPG_PORT": "nope"})


def test_blocked_extra_alias_keeps_gpg_relay(sock_dir, tmp_path):
    blocker = sock_dir / "gnupg" / "S.gpg-agent.extra"
    blocker.parent.mkdir(parents=True)
    blocker.write_text("not a socket")

    async def scenario() -> tuple[RelayApp, bool]:
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        app = RelayApp(_config(sock_dir, tmp_path, REMOTE_VERSION, gpg={"port": port}))
        try:
            await app.start()
            serving = [listener.serving for listener in app.listeners] == [True]
        finally:
            await app.shutdown()
            server.close()
            await server.wait_closed()
        return app, serving

    app, serving = asyncio.run(scenario())
    assert serving
    assert any(s.startswith("gpg-agent-extra alias skipped") for s in app.skipped)
    assert blocker.read_text() == "not a socket"
    assert not os.path.lexists(sock_dir / "gnupg" / "S.gpg-agent")


def test_request_stop_releases_wait(sock_dir, tmp_path):
    async def scenario() -> bool:
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        app = RelayApp(_config(sock_dir, tmp_path, REMOTE_VERSION, gpg={"port": port}))
        await app.start()
        waiter = asyncio.create_task(app.wait())
        await asyncio.sleep(0.05)
        assert not waiter.done()
        app.request_stop()
        await asyncio.wait_for(waiter, timeout=2)
        await app.shutdown()
        server.close()
        await server.wait_closed()
        return app.listeners == []

    assert asyncio.run(scenario())
