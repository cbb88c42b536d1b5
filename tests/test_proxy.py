"""Tests for acmectl.proxy - the execute-intercepting event proxy."""

import asyncio
import os
import sys

import pytest

from acmectl.errors import CommandError, ForwardError, WindowIOError
from acmectl.event import EOF, EventRecord
from acmectl.proxy import EventProxy, ProxyState, SpawnOptions, run_command


def make_queue(*items):
    queue = asyncio.Queue()
    for item in items:
        queue.put_nowait(item)
    return queue


class Recorder:
    """Collects forwards and spawns in one ordered log."""

    def __init__(self, fail_spawns=0, fail_forward_on=None):
        self.log = []
        self.fail_spawns = fail_spawns
        self.fail_forward_on = fail_forward_on

    async def forward(self, record):
        if self.fail_forward_on is not None and record.text == self.fail_forward_on:
            raise WindowIOError("write", "event", "window deleted")
        self.log.append(("forward", record))

    async def spawn(self, argv, options):
        self.log.append(("spawn", list(argv), options))
        if self.fail_spawns:
            self.fail_spawns -= 1
            raise CommandError(argv, "exit status 1", 1)
        return 0


def proxy_for(rec, target="Put", argv=("make", "install")):
    return EventProxy(target, list(argv), rec.forward, spawn=rec.spawn)


class TestEventProxy:

    @pytest.mark.asyncio
    async def test_scenario_intercepts_only_target(self):
        rec = Recorder()
        proxy = proxy_for(rec)
        delete = EventRecord("M", "x", 0, 3, text="Del")
        put = EventRecord("M", "x", 4, 7, text="Put")
        focus = EventRecord("M", "f", 0, 0, text="x")

        await proxy.run(make_queue(delete, put, focus, EOF))

        assert rec.log == [
            ("forward", delete),
            ("spawn", ["make", "install"], SpawnOptions()),
            ("forward", focus),
        ]
        assert proxy.dispatched == 1
        assert proxy.forwarded == 2
        assert proxy.state is ProxyState.CLOSED

    @pytest.mark.asyncio
    async def test_empty_stream_returns_immediately(self):
        rec = Recorder()
        proxy = proxy_for(rec)

        await proxy.run(make_queue(EOF))

        assert rec.log == []
        assert proxy.state is ProxyState.CLOSED

    @pytest.mark.asyncio
    async def test_body_and_tag_execute_treated_alike(self):
        rec = Recorder()
        proxy = proxy_for(rec)

        await proxy.run(make_queue(
            EventRecord("M", "x", text="Put"),
            EventRecord("M", "X", text="Put"),
            EOF,
        ))

        assert [entry[0] for entry in rec.log] == ["spawn", "spawn"]

    @pytest.mark.asyncio
    async def test_match_is_exact(self):
        rec = Recorder()
        proxy = proxy_for(rec)
        near_misses = [
            EventRecord("M", "x", text="put"),
            EventRecord("M", "x", text="Put "),
            EventRecord("M", "x", text=" Put"),
            EventRecord("M", "x", text="Putall"),
        ]

        await proxy.run(make_queue(*near_misses, EOF))

        assert rec.log == [("forward", r) for r in near_misses]

    @pytest.mark.asyncio
    async def test_non_execute_with_target_text_is_forwarded(self):
        rec = Recorder()
        proxy = proxy_for(rec)
        look = EventRecord("M", "L", text="Put")
        insert = EventRecord("K", "I", text="Put")

        await proxy.run(make_queue(look, insert, EOF))

        assert rec.log == [("forward", look), ("forward", insert)]

    @pytest.mark.asyncio
    async def test_forwarded_record_is_unchanged(self):
        rec = Recorder()
        proxy = proxy_for(rec)
        record = EventRecord("M", "X", 8, 11, 2, "Get", orig_q0=10, orig_q1=10,
                             raw=b"MX10 10 2 0 \nMX8 11 0 3 Get\n")

        await proxy.run(make_queue(record, EOF))

        forwarded = rec.log[0][1]
        assert forwarded is record
        assert forwarded.encode() == b"MX10 10 \n"

    @pytest.mark.asyncio
    async def test_order_is_preserved(self):
        rec = Recorder()
        proxy = proxy_for(rec)
        records = [
            EventRecord("M", "x", text=text)
            for text in ["a", "Put", "b", "Put", "Put", "c"]
        ]

        await proxy.run(make_queue(*records, EOF))

        kinds = [entry[0] for entry in rec.log]
        assert kinds == ["forward", "spawn", "forward", "spawn", "spawn", "forward"]
        assert [entry[1].text for entry in rec.log if entry[0] == "forward"] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_failed_command_does_not_stop_processing(self):
        rec = Recorder(fail_spawns=1)
        proxy = proxy_for(rec)
        after = EventRecord("M", "x", text="Del")

        await proxy.run(make_queue(
            EventRecord("M", "x", text="Put"),
            after,
            EventRecord("M", "x", text="Put"),
            EOF,
        ))

        assert [entry[0] for entry in rec.log] == ["spawn", "forward", "spawn"]
        assert proxy.failed == 1
        assert proxy.dispatched == 2
        assert proxy.state is ProxyState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_command_is_not_forwarded(self):
        rec = Recorder(fail_spawns=1)
        proxy = proxy_for(rec)

        await proxy.run(make_queue(EventRecord("M", "x", text="Put"), EOF))

        assert all(entry[0] != "forward" for entry in rec.log)

    @pytest.mark.asyncio
    async def test_forward_failure_stops_processing(self):
        rec = Recorder(fail_forward_on="Del")
        proxy = proxy_for(rec)

        with pytest.raises(ForwardError) as excinfo:
            await proxy.run(make_queue(
                EventRecord("M", "x", text="Del"),
                EventRecord("M", "x", text="Put"),
                EOF,
            ))

        assert "window deleted" in str(excinfo.value)
        assert rec.log == []
        assert proxy.state is ProxyState.CLOSED

    @pytest.mark.asyncio
    async def test_intercept_logs_where_it_was_executed(self, caplog):
        rec = Recorder()
        proxy = proxy_for(rec)

        with caplog.at_level("DEBUG", logger="acmectl.proxy"):
            await proxy.run(make_queue(
                EventRecord("M", "x", text="Put"),
                EventRecord("M", "X", text="Put"),
                EOF,
            ))

        messages = [r.getMessage() for r in caplog.records if r.name == "acmectl.proxy"]
        assert "Intercepted 'Put' executed in the tag" in messages
        assert "Intercepted 'Put' executed in the body" in messages

    def test_requires_command(self):
        rec = Recorder()
        with pytest.raises(ValueError):
            EventProxy("Put", [], rec.forward)


class TestRunCommand:

    @pytest.mark.asyncio
    async def test_success(self):
        argv = [sys.executable, "-c", "pass"]
        assert await run_command(argv) == 0

    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        argv = [sys.executable, "-c", "raise SystemExit(3)"]
        with pytest.raises(CommandError) as excinfo:
            await run_command(argv)
        assert excinfo.value.returncode == 3
        assert "exit status 3" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_launch_failure(self):
        with pytest.raises(CommandError):
            await run_command(["/nonexistent/acmectl-test-command"])

    @pytest.mark.asyncio
    async def test_stdin_not_connected(self, capfd):
        argv = [sys.executable, "-c", "import sys; print(repr(sys.stdin.read()))"]
        await run_command(argv)
        out, _ = capfd.readouterr()
        assert out.strip() == "''"

    @pytest.mark.asyncio
    async def test_output_inherited(self, capfd):
        argv = [sys.executable, "-c", "import sys; print('to-out'); print('to-err', file=sys.stderr)"]
        await run_command(argv)
        out, err = capfd.readouterr()
        assert "to-out" in out
        assert "to-err" in err

    @pytest.mark.asyncio
    async def test_output_suppressed(self, capfd):
        argv = [sys.executable, "-c", "print('hidden')"]
        await run_command(argv, SpawnOptions(inherit_stdout=False))
        out, _ = capfd.readouterr()
        assert "hidden" not in out

    @pytest.mark.asyncio
    async def test_cancel_kills_child(self, tmp_path):
        pidfile = tmp_path / "pid"
        argv = [
            sys.executable, "-c",
            f"import os, pathlib, time; pathlib.Path({str(pidfile)!r}).write_text(str(os.getpid())); time.sleep(30)",
        ]
        task = asyncio.ensure_future(run_command(argv))
        for _ in range(200):
            if pidfile.exists() and pidfile.read_text():
                break
            await asyncio.sleep(0.05)
        pid = int(pidfile.read_text())

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)
