import asyncio
import re
import sys

import pytest

from mcpanel import process
from mcpanel.process import BackendError, LaunchSpec, LocalProcessBackend, read_console_line

# Stand-in for a server jar: echoes console input, exits on "stop".
ECHO_SERVER = """
import sys
print("Done (0.1s)! For help, type \\"help\\"", flush=True)
for line in sys.stdin:
    line = line.strip()
    if line == "stop":
        print("Stopping server", flush=True)
        break
    print("echo: " + line, flush=True)
"""

CRASHING_SERVER = "import sys; print('boom', flush=True); sys.exit(3)"

LONG_LINE_SERVER = """
import sys
sys.stdout.write("x" * 200000 + "\\n")
print("after", flush=True)
sys.exit(3)
"""

STUBBORN_SERVER = """
import time
print("ignoring stdin", flush=True)
time.sleep(60)
"""


def spec_for(tmp_path, script, name="survival", stop_timeout=5):
    return LaunchSpec(
        name=name,
        command=[sys.executable, "-u", "-c", script],
        cwd=str(tmp_path),
        log_path=str(tmp_path / "logs" / "server.log"),
        stop_timeout=stop_timeout,
    )


async def wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def test_lifecycle_with_console_and_log(tmp_path):
    events = []

    async def listener(event):
        events.append(event)

    async def scenario():
        backend = LocalProcessBackend()
        backend.add_listener(listener)
        info = await backend.start(spec_for(tmp_path, ECHO_SERVER))
        assert info["status"] == "online"
        assert info["pid"]

        with pytest.raises(BackendError):
            await backend.start(spec_for(tmp_path, ECHO_SERVER))

        await backend.send("survival", "say hi")
        await wait_for(lambda: any(e.get("line") == "echo: say hi" for e in events))

        stopped = await backend.stop("survival")
        assert stopped["status"] == "stopped"
        assert stopped["exit_code"] == 0
        return await backend.describe("survival")

    final = asyncio.run(scenario())
    assert final["status"] == "stopped"

    statuses = [e["status"] for e in events if e["type"] == "status"]
    assert statuses[:2] == ["starting", "online"]
    assert "stopping" in statuses

    lines = (tmp_path / "logs" / "server.log").read_text().splitlines()
    assert any(line.endswith(": echo: say hi") for line in lines)
    assert all(re.match(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}: ", line) for line in lines)


def test_crash_is_errored_and_can_be_relaunched(tmp_path):
    async def scenario():
        backend = LocalProcessBackend()
        await backend.start(spec_for(tmp_path, CRASHING_SERVER))
        await wait_for(lambda: backend._procs["survival"].status == "errored")
        crashed = await backend.describe("survival")

        relaunched = await backend.start(spec_for(tmp_path, ECHO_SERVER))
        await backend.stop("survival")
        return crashed, relaunched, await backend.list()

    crashed, relaunched, listed = asyncio.run(scenario())
    assert crashed["exit_code"] == 3
    assert relaunched["status"] == "online"
    assert len(listed) == 1


def test_stop_escalates_when_stop_command_is_ignored(tmp_path):
    async def scenario():
        backend = LocalProcessBackend()
        await backend.start(spec_for(tmp_path, STUBBORN_SERVER, stop_timeout=0.5))
        return await backend.stop("survival")

    info = asyncio.run(scenario())
    assert info["status"] == "stopped"
    assert info["exit_code"] != 0


def test_restart_increments_counter(tmp_path):
    async def scenario():
        backend = LocalProcessBackend()
        first = await backend.start(spec_for(tmp_path, ECHO_SERVER))
        second = await backend.restart("survival")
        await backend.shutdown()
        return first, second, await backend.describe("survival")

    first, second, final = asyncio.run(scenario())
    assert second["restarts"] == 1
    assert second["pid"] != first["pid"]
    assert final["status"] == "stopped"


def test_unknown_names(tmp_path):
    async def scenario():
        backend = LocalProcessBackend()
        for call in (backend.stop, backend.restart):
            with pytest.raises(BackendError, match="not found"):
                await call("ghost")
        with pytest.raises(BackendError):
            await backend.send("ghost", "list")
        assert await backend.describe("ghost") is None

    asyncio.run(scenario())


def test_launch_failure_is_errored(tmp_path):
    async def scenario():
        backend = LocalProcessBackend()
        spec = spec_for(tmp_path, "")
        spec.command = [str(tmp_path / "no-such-java")]
        with pytest.raises(BackendError):
            await backend.start(spec)
        return await backend.describe("survival")

    assert asyncio.run(scenario())["status"] == "errored"


def test_long_console_line_is_logged_and_exit_recorded(tmp_path):
    async def scenario():
        backend = LocalProcessBackend()
        await backend.start(spec_for(tmp_path, LONG_LINE_SERVER))
        await wait_for(lambda: backend._procs["survival"].status == "errored")
        return await backend.describe("survival")

    info = asyncio.run(scenario())
    assert info["exit_code"] == 3

    lines = (tmp_path / "logs" / "server.log").read_text().splitlines()
    assert lines[0].endswith(": " + "x" * 200000)
    assert lines[1].endswith(": after")


def test_line_over_stream_limit_is_truncated(tmp_path, monkeypatch):
    monkeypatch.setattr(process, "STREAM_LIMIT", 4096)

    async def scenario():
        backend = LocalProcessBackend()
        await backend.start(spec_for(tmp_path, LONG_LINE_SERVER))
        await wait_for(lambda: backend._procs["survival"].status == "errored")
        return await backend.describe("survival")

    info = asyncio.run(scenario())
    assert info["exit_code"] == 3

    lines = (tmp_path / "logs" / "server.log").read_text().splitlines()
    assert len(lines) == 2
    assert 4096 <= lines[0].count("x") < 200000
    assert lines[1].endswith(": after")


def test_read_console_line_drops_rest_of_overlong_line():
    async def scenario():
        stream = asyncio.StreamReader(limit=16)
        stream.feed_data(b"short\n" + b"y" * 100)
        short = await read_console_line(stream)
        pending = asyncio.ensure_future(read_console_line(stream))
        await asyncio.sleep(0)
        stream.feed_data(b"z" * 50 + b"\nlast")
        stream.feed_eof()
        return short, await pending, await read_console_line(stream), await read_console_line(stream)

    short, long, last, eof = asyncio.run(scenario())
    assert short == b"short\n"
    assert long == b"y" * 100 + b"\n"
    assert last == b"last"
    assert eof == b""
