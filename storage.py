import asyncio
import json
import os
from pathlib import Path
from typing import Any, List, Optional, Union
from models import MessageLine, SystemLine, dump_log_line
from logging_config import logger


class PersistenceLog:
    """One append-only, line-delimited log file per room.

    Lines are never rewritten or compacted; replaying a room is reading its
    file top to bottom.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def path_for(self, room_id: str) -> Path:
        return self.directory / f"{room_id}.txt"

    def _append_sync(self, room_id: str, line: str):
        self.directory.mkdir(parents=True, exist_ok=True)
        # One write() per line in append mode: concurrent appends do not interleave.
        with open(self.path_for(room_id), "a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    async def append(self, room_id: str, entry: Union[MessageLine, SystemLine]) -> str:
        line = dump_log_line(entry)
        await asyncio.to_thread(self._append_sync, room_id, line)
        return line

    def _read_sync(self, room_id: str) -> List[str]:
        try:
            with open(self.path_for(room_id), "r", encoding="utf-8") as fh:
                content = fh.read()
        except FileNotFoundError:
            return []
        return [line for line in content.split("\n") if line.strip()]

    async def read_lines(self, room_id: str) -> List[str]:
        return await asyncio.to_thread(self._read_sync, room_id)


class SnapshotFile:
    """A JSON file rewritten wholesale through temp-file + atomic rename."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self, default: Any = None) -> Any:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return {} if default is None else default
        except ValueError as e:
            logger.error(f"Corrupt snapshot {self.path}: {e}")
            return {} if default is None else default

    def save(self, data: Any):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh)
        os.replace(tmp, self.path)


class SnapshotWriter:
    """Single writer for one snapshot file.

    submit() hands over a fully-built snapshot and returns immediately;
    a background task writes snapshots in submission order. When several are
    queued only the newest needs to reach disk, so older ones are skipped.
    """

    def __init__(self, snapshot: SnapshotFile):
        self.snapshot = snapshot
        # Created on first submit so it belongs to the loop that serves requests
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    def submit(self, data: Any):
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._queue.put_nowait(data)
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(self._queue))

    async def _run(self, queue: asyncio.Queue):
        while True:
            data = await queue.get()
            skipped = 0
            while not queue.empty():
                data = queue.get_nowait()
                skipped += 1
            try:
                await asyncio.to_thread(self.snapshot.save, data)
            except OSError as e:
                logger.error(f"Snapshot write to {self.snapshot.path} failed: {e}")
            finally:
                for _ in range(skipped + 1):
                    queue.task_done()

    async def flush(self):
        if self._queue is not None:
            await self._queue.join()

    async def close(self):
        await self.flush()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._queue = None
