import asyncio
import hashlib
from typing import Dict, Optional

from . import codec
from .context import DriveContext
from .errors import FileNotFound, IntegrityError, PartUnavailable, RemoteError
from .log import logger as log
from .models import ChunkRef, FileRecord, FileStatus
from .retry import call_with_retries


def _discard(task: asyncio.Task):
    # leftover prefetches finish on their own; only their outcome is dropped
    if not task.cancelled():
        task.exception()


class FileStream:
    """Ordered byte stream over one file record.

    Up to ``read_ahead`` chunks beyond the one being consumed are fetched in
    the background. Chunks can complete in any order but bytes always leave in
    index order, cut into ``stream_buffer`` sized pieces.
    """

    def __init__(self, engine: "DownloadEngine", record: FileRecord):
        self.engine = engine
        self.record = record
        self._window: Dict[int, asyncio.Task] = {}
        self._next_fetch = 0
        self._next_yield = 0
        self._current = memoryview(b"")
        self._offset = 0
        self._hasher = hashlib.sha256()
        self._closed = False

    def __aiter__(self):
        return self

    def _fill(self):
        cfg = self.engine.ctx.config
        while len(self._window) <= cfg.read_ahead and self._next_fetch < len(self.record.chunks):
            index = self._next_fetch
            self._window[index] = asyncio.create_task(self.engine.fetch_chunk(self.record, index))
            self._next_fetch += 1

    async def __anext__(self) -> bytes:
        piece_size = self.engine.ctx.config.stream_buffer
        while self._offset >= len(self._current):
            if self._closed:
                raise StopAsyncIteration
            if self._next_yield >= len(self.record.chunks):
                await self.aclose()
                self._check_total()
                raise StopAsyncIteration
            self._fill()
            task = self._window.pop(self._next_yield)
            try:
                data = await asyncio.shield(task)
            except BaseException:
                _discard_later(task)
                await self.aclose()
                raise
            self._hasher.update(data)
            self._next_yield += 1
            self._fill()
            self._current = memoryview(data)
            self._offset = 0
        piece = bytes(self._current[self._offset:self._offset + piece_size])
        self._offset += len(piece)
        return piece

    def _check_total(self):
        record = self.record
        if record.checksum and self._hasher.hexdigest() != record.checksum:
            raise IntegrityError("reassembled file does not match its checksum", file_id=record.id)

    async def aclose(self):
        if self._closed:
            return
        self._closed = True
        for task in self._window.values():
            _discard_later(task)
        self._window.clear()
        self._current = memoryview(b"")
        self._offset = 0

    async def read(self) -> bytes:
        buf = bytearray()
        async for piece in self:
            buf.extend(piece)
        return bytes(buf)


def _discard_later(task: asyncio.Task):
    if task.done():
        _discard(task)
    else:
        task.add_done_callback(_discard)


class DownloadEngine:
    def __init__(self, ctx: DriveContext):
        self.ctx = ctx
        self.registry = ctx.registry

    async def open(self, file_id) -> FileStream:
        record = await self.registry.get_file(file_id)
        if record.status != FileStatus.COMPLETE:
            raise FileNotFound(f"file is {record.status.value}, not downloadable", file_id=file_id)
        if not record.is_contiguous():
            raise IntegrityError("recorded chunk list has gaps", file_id=file_id)
        log.info(f"Download started: {record.name} ({record.id}), {len(record.chunks)} chunk(s)")
        return self.stream_record(record)

    def stream_record(self, record: FileRecord) -> FileStream:
        return FileStream(self, record)

    async def fetch_chunk(self, record: FileRecord, index: int) -> bytes:
        """Fetch, unpack and verify chunk ``index``, falling back to its replica."""
        cfg = self.ctx.config
        ref = record.chunks[index]
        sources = [ref]
        replica: Optional[ChunkRef] = record.replica_for(index)
        if replica is not None and replica.platform != ref.platform:
            sources.append(replica)

        last_error = None
        for source in sources:
            sender = self.ctx.sender_for(source.platform)
            if sender is None:
                last_error = PartUnavailable(f"no {source.platform} sender configured", file_id=record.id,
                                             chunk_index=index)
                continue
            try:
                raw = await call_with_retries(lambda: sender.fetch(source.remote), attempts=cfg.fetch_retries,
                                              backoff_factor=cfg.retry_backoff,
                                              what=f"fetch chunk {index} of {record.name} from {source.platform}")
            except RemoteError as e:
                last_error = e
                log.warning(f"Chunk {index} of {record.name} unavailable on {source.platform}: {e.message}")
                continue
            if source is not ref:
                log.info(f"Chunk {index} of {record.name} served from {source.platform} replica")
            return codec.open_chunk(raw, index, source.checksum, self.ctx.cipher, file_id=record.id)

        detail = last_error.message if last_error is not None else "no source"
        raise PartUnavailable(f"chunk {index} is unavailable: {detail}", file_id=record.id,
                              chunk_index=index) from last_error
