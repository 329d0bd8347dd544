"""
Tests for the upload tracker: chunked transfer, progress fan-out, lifecycle
"""
import asyncio
import io

import pytest

from app.exceptions import TransferError
from app.tracker import FAILED, SUCCEEDED, UploadTracker

KB = 1024
MiB = 1024 * 1024


class RecordingSink:
    def __init__(self, fail_on=None, delay=0.0):
        self.fail_on = fail_on
        self.delay = delay
        self.chunks = []
        self.closed = False
        self.aborted = False

    async def write(self, chunk):
        if self.fail_on is not None and len(self.chunks) == self.fail_on:
            raise TransferError("Drive chunk rejected: 503")
        if self.delay:
            await asyncio.sleep(self.delay)
        self.chunks.append(chunk)

    async def close(self):
        self.closed = True
        return {"id": "remote-1", "size": str(sum(len(c) for c in self.chunks))}

    async def abort(self):
        self.aborted = True


def sink_factory(sink):
    async def _open(task):
        return sink
    return _open


async def collect(tracker, upload_id):
    return [event async for event in tracker.subscribe(upload_id)]


def run(coro):
    return asyncio.run(coro)


class TestSuccessfulUpload:

    def test_one_mib_in_64k_chunks_emits_sixteen_updates(self):
        async def scenario():
            tracker = UploadTracker(chunk_size=64 * KB)
            sink = RecordingSink()
            upload_id = tracker.begin_upload(io.BytesIO(b"a" * MiB), "big.bin", MiB, 1, sink_factory(sink))
            events = await collect(tracker, upload_id)
            await tracker.join()
            return tracker, upload_id, sink, events

        tracker, upload_id, sink, events = run(scenario())

        # first event is the state at attach time
        assert events[0] == {"progress": 0}
        updates = events[1:]
        assert len(updates) == 16
        assert updates[-1] == {"progress": 100, "done": True}
        values = [e["progress"] for e in updates]
        assert values == sorted(values)
        assert values.count(100) == 1
        assert len(sink.chunks) == 16
        assert all(len(c) == 64 * KB for c in sink.chunks)
        assert tracker.get(upload_id) is None

    def test_finished_upload_is_no_longer_subscribable(self):
        async def scenario():
            tracker = UploadTracker(chunk_size=64 * KB)
            upload_id = tracker.begin_upload(io.BytesIO(b"a" * MiB), "big.bin", MiB, 1, sink_factory(RecordingSink()))
            await tracker.join()
            return await collect(tracker, upload_id), tracker.active_ids()

        events, active = run(scenario())
        assert events == []
        assert active == []

    def test_begin_upload_returns_before_transfer(self):
        async def scenario():
            tracker = UploadTracker(chunk_size=4)
            sink = RecordingSink()
            upload_id = tracker.begin_upload(io.BytesIO(b"12345678"), "f", 8, 1, sink_factory(sink))
            written_before = len(sink.chunks)
            active = tracker.active_ids()
            await tracker.join()
            return upload_id, written_before, active, sink

        upload_id, written_before, active, sink = run(scenario())
        assert written_before == 0
        assert active == [upload_id]
        assert sink.closed

    def test_success_hook_sees_remote_result(self):
        seen = {}

        def on_success(task, result):
            seen["state"] = task.state
            seen["result"] = result
            seen["progress"] = task.progress

        async def scenario():
            tracker = UploadTracker(chunk_size=64 * KB)
            tracker.begin_upload(io.BytesIO(b"z" * 1000), "f", 1000, 1, sink_factory(RecordingSink()),
                                 on_success=on_success)
            await tracker.join()

        run(scenario())
        assert seen["state"] == SUCCEEDED
        assert seen["progress"] == 100
        assert seen["result"]["id"] == "remote-1"

    def test_async_hooks_are_awaited(self):
        calls = []

        async def on_start(task):
            await asyncio.sleep(0)
            calls.append("start")

        async def on_success(task, result):
            await asyncio.sleep(0)
            calls.append("success")

        async def scenario():
            tracker = UploadTracker(chunk_size=64 * KB)
            tracker.begin_upload(io.BytesIO(b"z" * 10), "f", 10, 1, sink_factory(RecordingSink()),
                                 on_start=on_start, on_success=on_success)
            await tracker.join()

        run(scenario())
        assert calls == ["start", "success"]

    def test_zero_byte_file_completes_at_100(self):
        async def scenario():
            tracker = UploadTracker(chunk_size=64 * KB)
            sink = RecordingSink()
            upload_id = tracker.begin_upload(io.BytesIO(b""), "empty.txt", 0, 1, sink_factory(sink))
            return await collect(tracker, upload_id), sink

        events, sink = run(scenario())
        assert events == [{"progress": 0}, {"progress": 100, "done": True}]
        assert sink.chunks == []
        assert sink.closed

    def test_progress_hook_called_once_per_percentage_step(self):
        sent = []

        async def scenario():
            tracker = UploadTracker(chunk_size=1)
            tracker.begin_upload(io.BytesIO(b"x" * 1000), "f", 1000, 1, sink_factory(RecordingSink()),
                                 on_progress=lambda task: sent.append(task.sent))
            await tracker.join()

        run(scenario())
        # 1..99 percent, never 100 from a chunk
        assert len(sent) == 99
        assert sent == sorted(sent)

    def test_source_closed_after_transfer(self):
        source = io.BytesIO(b"abc")

        async def scenario():
            tracker = UploadTracker()
            tracker.begin_upload(source, "f", 3, 1, sink_factory(RecordingSink()))
            await tracker.join()

        run(scenario())
        assert source.closed


class TestFailedUpload:

    def test_chunk_failure_is_terminal(self):
        failures = []
        successes = []

        async def scenario():
            tracker = UploadTracker(chunk_size=64 * KB)
            sink = RecordingSink(fail_on=3)
            upload_id = tracker.begin_upload(
                io.BytesIO(b"a" * MiB), "big.bin", MiB, 1, sink_factory(sink),
                on_success=lambda t, r: successes.append(t),
                on_failure=lambda t, exc: failures.append((t.state, exc)),
            )
            events = await collect(tracker, upload_id)
            return tracker, upload_id, sink, events

        tracker, upload_id, sink, events = run(scenario())
        assert events[-1]["error"] == "Upload failed"
        assert [e for e in events if e.get("error")] == [events[-1]]
        assert not any(e.get("done") for e in events)
        assert len(sink.chunks) == 3
        assert sink.aborted
        assert not sink.closed
        assert successes == []
        assert len(failures) == 1
        assert failures[0][0] == FAILED
        assert isinstance(failures[0][1], TransferError)
        assert tracker.get(upload_id) is None

    def test_credential_failure_when_opening_sink(self):
        async def open_sink(task):
            raise TransferError("Missing refresh token")

        async def scenario():
            tracker = UploadTracker()
            upload_id = tracker.begin_upload(io.BytesIO(b"abc"), "f", 3, 1, open_sink)
            return await collect(tracker, upload_id)

        events = run(scenario())
        assert events == [{"progress": 0}, {"progress": 0, "error": "Upload failed"}]

    def test_no_retry_after_failure(self):
        opened = []

        async def open_sink(task):
            opened.append(task.upload_id)
            return RecordingSink(fail_on=0)

        async def scenario():
            tracker = UploadTracker()
            tracker.begin_upload(io.BytesIO(b"abc"), "f", 3, 1, open_sink)
            await tracker.join()

        run(scenario())
        assert len(opened) == 1

    def test_failing_hook_does_not_turn_success_into_failure(self):
        def on_success(task, result):
            raise RuntimeError("db down")

        async def scenario():
            tracker = UploadTracker()
            upload_id = tracker.begin_upload(io.BytesIO(b"abc"), "f", 3, 1, sink_factory(RecordingSink()),
                                             on_success=on_success)
            return await collect(tracker, upload_id)

        events = run(scenario())
        assert events[-1] == {"progress": 100, "done": True}


class TestSubscriptions:

    @staticmethod
    async def _rest(stream):
        return [event async for event in stream]

    def test_unknown_id_yields_nothing(self):
        async def scenario():
            return await collect(UploadTracker(), "never-issued")

        assert run(scenario()) == []

    def test_every_subscriber_receives_every_update(self):
        async def scenario():
            tracker = UploadTracker(chunk_size=100)
            upload_id = tracker.begin_upload(io.BytesIO(b"q" * 1000), "f", 1000, 1, sink_factory(RecordingSink()))
            streams = [tracker.subscribe(upload_id), tracker.subscribe(upload_id)]
            # attach both before the transfer gets a turn on the loop
            firsts = [await s.__anext__() for s in streams]
            rests = await asyncio.gather(*(self._rest(s) for s in streams))
            return [[f] + r for f, r in zip(firsts, rests)]

        first, second = run(scenario())
        assert first == second
        assert first[-1] == {"progress": 100, "done": True}
        assert len(first) == 1 + 10

    def test_late_subscriber_starts_from_current_progress(self):
        async def scenario():
            tracker = UploadTracker(chunk_size=100)
            sink = RecordingSink(delay=0.01)
            upload_id = tracker.begin_upload(io.BytesIO(b"q" * 1000), "f", 1000, 1, sink_factory(sink))
            while len(sink.chunks) < 5:
                await asyncio.sleep(0.005)
            return await collect(tracker, upload_id)

        events = run(scenario())
        assert events[0]["progress"] >= 40
        values = [e["progress"] for e in events]
        assert values == sorted(values)
        assert events[-1] == {"progress": 100, "done": True}

    def test_detaching_does_not_stop_transfer(self):
        async def scenario():
            tracker = UploadTracker(chunk_size=100)
            sink = RecordingSink(delay=0.005)
            upload_id = tracker.begin_upload(io.BytesIO(b"q" * 1000), "f", 1000, 1, sink_factory(sink))
            stream = tracker.subscribe(upload_id)
            await stream.__anext__()
            await stream.__anext__()
            await stream.aclose()
            subscribers_after_close = len(tracker.get(upload_id).subscribers)
            await tracker.join()
            return sink, subscribers_after_close

        sink, subscribers_after_close = run(scenario())
        assert subscribers_after_close == 0
        assert sink.closed
        assert len(sink.chunks) == 10


def test_duplicate_upload_id_rejected():
    async def scenario():
        tracker = UploadTracker()
        tracker.begin_upload(io.BytesIO(b"a"), "f", 1, 1, sink_factory(RecordingSink()), upload_id="same")
        with pytest.raises(ValueError):
            tracker.begin_upload(io.BytesIO(b"a"), "f", 1, 1, sink_factory(RecordingSink()), upload_id="same")
        await tracker.join()

    run(scenario())


def test_chunk_size_must_be_positive():
    with pytest.raises(ValueError):
        UploadTracker(chunk_size=0)
