"""
FlashTune - Library Session

Shared state for one running library: the single database connection, the
currently attached volume, and the write queue every mutation goes through.

``WriteQueue`` is a single-consumer task queue.  Tasks run strictly one at a
time in submission order; a failing task reports its exception to whoever
submitted it and the worker moves on to the next one.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple

import aiosqlite
from loguru import logger

Task = Callable[[], Awaitable[Any]]


class SyncStatus(str, Enum):
    SKIPPED = "skipped"
    SYNCED = "synced"
    FAILED = "failed"


@dataclass
class SyncOutcome:
    """Result of pushing the database to the volume."""

    status: SyncStatus
    volume: Optional[str] = None
    message: str = ""

    @property
    def failed(self) -> bool:
        return self.status is SyncStatus.FAILED

    @property
    def warning(self) -> Optional[str]:
        return self.message if self.failed else None

    def to_dict(self) -> dict:
        return {"status": self.status.value, "volume": self.volume, "message": self.message}


@dataclass
class WriteOutcome:
    """Value returned by a database write plus what happened to the mirror."""

    value: Any
    mirror: SyncOutcome = field(default_factory=lambda: SyncOutcome(SyncStatus.SKIPPED))

    @property
    def warning(self) -> Optional[str]:
        return self.mirror.warning


# ---------------------------------------------------------------------------
# Write queue
# ---------------------------------------------------------------------------
class WriteQueue:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[Tuple[Task, asyncio.Future]] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def submit(self, task: Task) -> Any:
        """Queue *task* behind every earlier submission and await its result."""
        if self._closed:
            raise RuntimeError("Write queue is closed")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((task, future))
        self._ensure_worker()
        return await future

    async def _run(self) -> None:
        while True:
            task, future = await self._queue.get()
            try:
                if future.cancelled():
                    continue
                try:
                    result = await task()
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as e:
                    logger.debug("🧵 Queued write failed: {}", e)
                    if not future.cancelled():
                        future.set_exception(e)
                else:
                    if not future.cancelled():
                        future.set_result(result)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every task submitted so far has finished."""
        await self._queue.join()

    async def close(self) -> None:
        self._closed = True
        if self._worker is None:
            return
        await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------
class LibrarySession:
    """
    Explicit library context, injected into the database and the mirror.

    ``apply_lock`` is held while a write is applied and committed, and while
    an attach swaps the database file; reads take it too so they only ever
    see completed writes.

    ``working_copy_root`` names the volume whose database the local working
    copy currently holds (None until the first attach of this process).
    """

    def __init__(self, local_db_path: Path):
        self.local_db_path = Path(local_db_path)
        self.queue = WriteQueue()
        self.apply_lock = asyncio.Lock()
        self.connection: Optional[aiosqlite.Connection] = None
        self.volume_root: Optional[str] = None
        self.transitioning = False
        self.last_sync: Optional[SyncOutcome] = None
        self.working_copy_root: Optional[str] = None

    @property
    def is_attached(self) -> bool:
        return self.volume_root is not None and not self.transitioning
