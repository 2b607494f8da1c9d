import asyncio
import logging
import os
import time
from typing import Dict, List, Optional, Set, Tuple

from .models import AuditEventType
from .processor import FileProcessor
from .recorder import RunRecorder

logger = logging.getLogger(__name__)


def list_files(root: str) -> List[str]:
    """All non-hidden regular files under root, recursively."""
    out = []
    try:
        entries = list(os.scandir(root))
    except OSError:
        return out
    for entry in entries:
        if entry.name.startswith("."):
            continue
        if entry.is_dir(follow_symlinks=False):
            out.extend(list_files(entry.path))
        elif entry.is_file():
            out.append(entry.path)
    return out


class FolderWatcher:
    """
    Polling watcher for the uploads folder.

    A file is dispatched once it has been stable for `stability_ms`, and again
    whenever its (size, mtime) stamp changes. Polling works the same on bind
    mounts and network shares where native events are unreliable.
    """

    def __init__(
        self,
        processor: FileProcessor,
        recorder: RunRecorder,
        uploads_dir: str,
        poll_interval_ms: int = 5000,
        heartbeat_interval_ms: int = 15000,
        stability_ms: int = 2000,
    ):
        self.processor = processor
        self.recorder = recorder
        self.uploads_dir = os.path.abspath(uploads_dir)
        self.poll_interval = poll_interval_ms / 1000
        self.heartbeat_interval = heartbeat_interval_ms / 1000
        self.stability = stability_ms / 1000
        self._stamps: Dict[str, Tuple[int, int]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._loops: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._loops)

    def _dispatch(self, path: str) -> None:
        task = asyncio.get_running_loop().create_task(self.processor.handle(path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def scan(self, now: Optional[float] = None) -> List[str]:
        """One polling pass. Returns the paths dispatched."""
        now = time.time() if now is None else now
        files = await asyncio.to_thread(list_files, self.uploads_dir)
        present = set(files)
        dispatched = []
        for path in files:
            try:
                st = await asyncio.to_thread(os.stat, path)
            except OSError:
                continue
            if now - st.st_mtime < self.stability:
                continue
            stamp = (st.st_size, int(st.st_mtime * 1000))
            if self._stamps.get(path) == stamp:
                continue
            self._stamps[path] = stamp
            self._dispatch(path)
            dispatched.append(path)
        for gone in set(self._stamps) - present:
            del self._stamps[gone]
        return dispatched

    def heartbeat(self) -> None:
        self.recorder.emit(None, AuditEventType.worker_heartbeat, meta={"inFlight": len(self.processor.in_flight)})

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.scan()
            except Exception as e:
                logger.error(f"watcher_error: {type(e).__name__}")
            await asyncio.sleep(self.poll_interval)

    async def _heartbeat_loop(self) -> None:
        while True:
            self.heartbeat()
            await asyncio.sleep(self.heartbeat_interval)

    def start(self) -> None:
        logger.info("watcher_starting")
        loop = asyncio.get_running_loop()
        self._loops = [loop.create_task(self._poll_loop()), loop.create_task(self._heartbeat_loop())]

    async def stop(self) -> None:
        logger.info("shutdown_initiated")
        for t in self._loops:
            t.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
