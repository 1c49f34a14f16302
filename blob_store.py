import asyncio
import json
import os
from pathlib import Path
from typing import AsyncIterator, Union
from schemas import FileMeta, StoredFileMeta
from utils import new_file_id
from logging_config import logger


class BlobError(Exception):
    pass


class BlobNotFound(BlobError):
    pass


class BlobForbidden(BlobError):
    pass


class UploadTooLarge(BlobError):
    pass


class BlobStore:
    """Encrypted attachments: <id>.enc bytes plus a <id>.meta.json sidecar.

    Blobs are write-once and only readable through the room they were
    uploaded to.
    """

    def __init__(self, directory: Union[str, Path], max_bytes: int):
        self.directory = Path(directory)
        self.max_bytes = max_bytes

    def _blob_path(self, file_id: str) -> Path:
        return self.directory / f"{file_id}.enc"

    def _meta_path(self, file_id: str) -> Path:
        return self.directory / f"{file_id}.meta.json"

    async def save(self, room_id: str, meta: FileMeta, chunks: AsyncIterator[bytes]) -> str:
        await asyncio.to_thread(self.directory.mkdir, parents=True, exist_ok=True)
        file_id = new_file_id()
        partial = self.directory / f"{file_id}.enc.part"
        written = 0
        fh = await asyncio.to_thread(open, partial, "wb")
        try:
            async for chunk in chunks:
                written += len(chunk)
                if written > self.max_bytes:
                    raise UploadTooLarge(f"Upload exceeds {self.max_bytes} bytes")
                await asyncio.to_thread(fh.write, chunk)
        except BaseException:
            fh.close()
            await asyncio.to_thread(_unlink_quietly, partial)
            raise
        fh.close()

        stored = StoredFileMeta(**meta.model_dump(), room_id=room_id)
        await asyncio.to_thread(os.replace, partial, self._blob_path(file_id))
        await asyncio.to_thread(self._write_meta, file_id, stored)
        logger.info(f"Stored blob {file_id} ({written} bytes) for room {room_id[:8]}")
        return file_id

    def _write_meta(self, file_id: str, meta: StoredFileMeta):
        with open(self._meta_path(file_id), "w", encoding="utf-8") as fh:
            fh.write(meta.model_dump_json())

    def _read_meta(self, file_id: str) -> StoredFileMeta:
        try:
            with open(self._meta_path(file_id), "r", encoding="utf-8") as fh:
                return StoredFileMeta(**json.load(fh))
        except (FileNotFoundError, ValueError, TypeError):
            raise BlobNotFound(file_id)

    async def get_meta(self, room_id: str, file_id: str) -> StoredFileMeta:
        meta = await asyncio.to_thread(self._read_meta, file_id)
        if meta.room_id != room_id:
            raise BlobForbidden(file_id)
        return meta

    async def get_path(self, room_id: str, file_id: str) -> Path:
        await self.get_meta(room_id, file_id)
        path = self._blob_path(file_id)
        if not await asyncio.to_thread(path.is_file):
            raise BlobNotFound(file_id)
        return path


def _unlink_quietly(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass
