from __future__ import annotations

import asyncio
import sys
import time

import pytest

from common.process import _normalize_name, find_by_cmdline, is_running, run_command, terminate_all


def test_run_command_captures_output():
    result = asyncio.run(run_command([sys.executable, "-c", "import sys; print('out'); sys.exit(3)"], timeout=10))
    assert result.returncode == 3
    assert not result.ok
    assert result.stdout.strip() == "out"


def test_run_command_kills_on_timeout():
    started = time.monotonic()
    result = asyncio.run(run_command([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.3))
    assert result.timed_out
    assert not result.ok
    assert time.monotonic() - started < 5


def test_run_command_missing_executable(tmp_path):
    with pytest.raises(OSError):
        asyncio.run(run_command([str(tmp_path / "nope")], timeout=1))


def test_normalize_name():
    assert _normalize_name("C:/tools/GPG-Bridge.EXE") == "gpg-bridge"
    assert _normalize_name("gpg-bridge") == "gpg-bridge"


def test_unknown_process_is_not_running():
    assert is_running("ar-no-such-process-7f3a") is False


def test_find_and_terminate_by_cmdline():
    marker = "ar-marker-5c1e"

    async def scenario() -> int:
        proc = await asyncio.create_subprocess_exec(sys.executable, "-c", "import time; time.sleep(30)", marker)
        try:
            found = []
            for _ in range(50):
                found = find_by_cmdline(marker)
                if found:
                    break
                await asyncio.sleep(0.05)
            assert [p.pid for p in found] == [proc.pid]
            count = await asyncio.to_thread(terminate_all, found)
            await asyncio.wait_for(proc.wait(), timeout=5)
            return count
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

    assert asyncio.run(scenario()) == 1


def test_find_by_cmdline_skips_parent_process(monkeypatch):
    marker = "ar-marker-9d42"

    async def scenario() -> tuple[list[int], list[int]]:
        proc = await asyncio.create_subprocess_exec(sys.executable, "-c", "import time; time.sleep(30)", marker)
        try:
            seen: list[int] = []
            for _ in range(50):
                seen = [p.pid for p in find_by_cmdline(marker)]
                if seen:
                    break
                await asyncio.sleep(0.05)
            # Stand the child in for the launcher that started us.
            monkeypatch.setattr("os.getppid", lambda: proc.pid)
            as_parent = [p.pid for p in find_by_cmdline(marker)]
            return seen, as_parent
        finally:
            proc.kill()
            await proc.wait()

    seen, as_parent = asyncio.run(scenario())
    assert seen
    assert as_parent == []
