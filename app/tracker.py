"""
In-flight upload registry and progress fan-out.

Every accepted file becomes an :class:`UploadTask`. ``begin_upload`` schedules
its transfer on the running event loop and returns straight away; the
transfer streams the source to a sink in fixed-size chunks and publishes
percentage updates to whoever is subscribed to that upload id. Once a task
succeeds or fails it is dropped from the registry - the durable outcome lives
in the transfer history table, not here.
"""
import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from app.config import UPLOAD_CHUNK_BYTES

logger = logging.getLogger(__name__)

PENDING = "pending"
SENDING = "sending"
SUCCEEDED = "succeeded"
FAILED = "failed"

ERROR_MESSAGE = "Upload failed"


@dataclass
class UploadTask:
    upload_id: str
    file_name: str
    account_id: Any
    size: int
    progress: int = 0
    sent: int = 0
    error: Optional[str] = None
    state: str = PENDING
    result: Optional[dict] = None
    subscribers: List[asyncio.Queue] = field(default_factory=list, repr=False)

    @property
    def terminal(self) -> bool:
        return self.state in (SUCCEEDED, FAILED)

    def snapshot(self) -> dict:
        event = {"progress": self.progress}
        if self.state == SUCCEEDED:
            event["done"] = True
        elif self.state == FAILED:
            event["error"] = self.error or ERROR_MESSAGE
        return event


def _is_terminal_event(event: dict) -> bool:
    return bool(event.get("done") or event.get("error"))


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class UploadTracker:
    """Owns the in-flight :class:`UploadTask` table.

    Only the event loop thread touches the table, so no locking is needed.
    """

    def __init__(self, chunk_size: int = UPLOAD_CHUNK_BYTES):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self._tasks: Dict[str, UploadTask] = {}
        self._running = set()

    def get(self, upload_id: str) -> Optional[UploadTask]:
        return self._tasks.get(upload_id)

    def active_ids(self) -> List[str]:
        return list(self._tasks)

    def begin_upload(
        self,
        source,
        file_name: str,
        size: int,
        account,
        open_sink: Callable[[UploadTask], Awaitable[Any]],
        *,
        upload_id: Optional[str] = None,
        on_start: Optional[Callable] = None,
        on_progress: Optional[Callable] = None,
        on_success: Optional[Callable] = None,
        on_failure: Optional[Callable] = None,
    ) -> str:
        """Register an upload and start transferring it in the background.

        ``source`` is a binary file object and is closed when the transfer
        ends. ``open_sink(task)`` is awaited inside the transfer, so credential
        problems surface as a failed upload rather than in the caller.
        Hooks may be plain functions or coroutines:
        ``on_start(task)``, ``on_progress(task)``, ``on_success(task, result)``
        and ``on_failure(task, exc)``.
        """
        upload_id = upload_id or str(uuid.uuid4())
        if upload_id in self._tasks:
            raise ValueError(f"upload {upload_id} is already active")
        task = UploadTask(
            upload_id=upload_id,
            file_name=file_name,
            account_id=getattr(account, "id", account),
            size=size,
        )
        self._tasks[upload_id] = task

        runner = asyncio.get_running_loop().create_task(
            self._transfer(task, source, open_sink, on_start, on_progress, on_success, on_failure),
            name=f"upload-{upload_id}",
        )
        self._running.add(runner)
        runner.add_done_callback(self._running.discard)
        return upload_id

    async def join(self):
        """Wait for every transfer that is currently running."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    async def subscribe(self, upload_id: str) -> AsyncIterator[dict]:
        """Yield progress events for ``upload_id`` until it finishes.

        The first event is the current state; after that every update is
        delivered. Unknown (or already finished) ids yield nothing.
        """
        task = self._tasks.get(upload_id)
        if task is None:
            return
        first = task.snapshot()
        if task.terminal:
            yield first
            return

        queue: asyncio.Queue = asyncio.Queue()
        task.subscribers.append(queue)
        try:
            yield first
            while True:
                event = await queue.get()
                yield event
                if _is_terminal_event(event):
                    return
        finally:
            if queue in task.subscribers:
                task.subscribers.remove(queue)

    def _publish(self, task: UploadTask, event: dict):
        for queue in list(task.subscribers):
            queue.put_nowait(dict(event))

    async def _transfer(self, task, source, open_sink, on_start, on_progress, on_success, on_failure):
        sink = None
        try:
            task.state = SENDING
            if on_start:
                await _maybe_await(on_start(task))
            sink = await open_sink(task)

            total = task.size
            while True:
                chunk = source.read(self.chunk_size)
                if not chunk:
                    break
                await sink.write(chunk)
                task.sent += len(chunk)
                if task.sent >= total:
                    # 100 is reserved for the confirmed completion event
                    continue
                progress = min(99, round(task.sent / total * 100))
                if progress > task.progress:
                    task.progress = progress
                    self._publish(task, {"progress": progress})
                    if on_progress:
                        await _maybe_await(on_progress(task))

            result = await sink.close()
        except Exception as exc:
            await self._fail(task, sink, exc, on_failure)
        else:
            await self._succeed(task, result, on_success)
        finally:
            try:
                source.close()
            except Exception:
                logger.warning("failed to close upload source for %s", task.upload_id, exc_info=True)
            self._tasks.pop(task.upload_id, None)

    async def _succeed(self, task, result, on_success):
        task.state = SUCCEEDED
        task.progress = 100
        task.result = result
        logger.info("upload %s (%s) finished, %d bytes", task.upload_id, task.file_name, task.sent)
        if on_success:
            try:
                await _maybe_await(on_success(task, result))
            except Exception:
                # the file is on Drive already, bookkeeping failures don't fail it
                logger.exception("post-upload bookkeeping failed for %s", task.upload_id)
        self._publish(task, {"progress": 100, "done": True})

    async def _fail(self, task, sink, exc, on_failure):
        task.state = FAILED
        task.error = ERROR_MESSAGE
        logger.error("upload %s (%s) failed: %s", task.upload_id, task.file_name, exc)
        abort = getattr(sink, "abort", None)
        if abort is not None:
            try:
                await abort()
            except Exception:
                logger.warning("aborting remote upload %s failed", task.upload_id, exc_info=True)
        if on_failure:
            try:
                await _maybe_await(on_failure(task, exc))
            except Exception:
                logger.exception("failure bookkeeping failed for %s", task.upload_id)
        self._publish(task, {"progress": task.progress, "error": ERROR_MESSAGE})
