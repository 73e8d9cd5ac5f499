"""
Upload session manager.

A session moves through ``created -> receiving -> finalizing -> committed`` and
can be aborted from any non-terminal state (send failure, expiry, cancel).

Chunks must arrive in index order. Each accepted chunk is dispatched to the
remote platform(s) in its own task, at most ``upload_concurrency`` at a time.
Acknowledgements come back through a queue to a per-session committer which
appends them to the registry strictly in index order, so the registry always
holds a gap-free prefix of the file no matter which send finished first.
"""
import asyncio
import hashlib
import inspect
import uuid
from typing import Any, Dict, List, Optional, Set, Tuple

from . import codec
from .context import DriveContext
from .download import DownloadEngine
from .errors import (
    ChecksumMismatch, ChunkTooLarge, DriveError, Incomplete, InvalidRequest, OutOfOrder,
    PermanentRejection, ProtocolError, SessionAborted, SessionNotFound, SizeExceeded,
)
from .folders import ROOT_CHANNEL_NAME, FolderTree, clean_name
from .log import logger as log
from .models import BACKUP, PRIMARY, ChunkRef, FileRecord, RemoteRef, SessionState, UploadSession
from .retry import call_with_retries

SendResult = Tuple[ChunkRef, Optional[ChunkRef]]


class _Runtime:
    """In-memory companion of one persisted session."""

    def __init__(self, session: UploadSession, concurrency: int, received_bytes: int = 0, hash_known: bool = True):
        self.session = session
        self.lock = asyncio.Lock()
        self.slots = asyncio.Semaphore(concurrency)
        self.accepted = session.committed_chunks  # dispatch cursor
        self.received_bytes = received_bytes
        self.hasher = hashlib.sha256() if hash_known else None
        self.inflight: Set[asyncio.Task] = set()
        self.completions: asyncio.Queue = asyncio.Queue()
        self.committer: Optional[asyncio.Task] = None
        self.sent: List[ChunkRef] = []

    @property
    def state(self) -> SessionState:
        return self.session.state


class UploadSessionManager:
    def __init__(self, ctx: DriveContext, folders: Optional[FolderTree] = None,
                 downloads: Optional[DownloadEngine] = None):
        self.ctx = ctx
        self.registry = ctx.registry
        self.folders = folders or FolderTree(ctx)
        self.downloads = downloads or DownloadEngine(ctx)
        self._runtimes: Dict[str, _Runtime] = {}
        self._token_locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Runtime bookkeeping
    # ------------------------------------------------------------------
    def _attach(self, session: UploadSession, received_bytes: int = 0, hash_known: bool = True) -> _Runtime:
        existing = self._runtimes.get(session.session_id)
        if existing is not None:
            return existing
        rt = _Runtime(session, self.ctx.config.upload_concurrency, received_bytes, hash_known)
        if not session.state.terminal:
            rt.committer = asyncio.create_task(self._commit_loop(rt))
        self._runtimes[session.session_id] = rt
        return rt

    async def _runtime(self, session_id: str) -> _Runtime:
        rt = self._runtimes.get(session_id)
        if rt is not None:
            return rt
        session = await self.registry.get_session(session_id)
        if session is None:
            raise SessionNotFound("upload session not found", session_id=session_id)
        return await self._restore(session)

    async def _restore(self, session: UploadSession) -> _Runtime:
        if session.state.terminal:
            return self._attach(session)
        try:
            record = await self.registry.get_file(session.file_id)
        except DriveError:
            session.state = SessionState.ABORTED
            session.abort_reason = "pending file record is missing"
            session.last_activity = self.ctx.clock()
            await self.registry.save_session(session)
            log.warning(f"Upload session {session.session_id} lost its file record -> aborted")
            return self._attach(session)
        if session.state == SessionState.FINALIZING:
            session.state = SessionState.RECEIVING
        session.committed_chunks = len(record.chunks)
        session.received_bytes = record.received_size
        # the running hash can only be rebuilt from the remote copies
        return self._attach(session, received_bytes=record.received_size, hash_known=not record.chunks)

    async def recover(self) -> int:
        """Rebuild runtime state for every live session found in the registry."""
        restored = 0
        for session in await self.registry.sessions():
            if session.session_id in self._runtimes or session.state.terminal:
                continue
            rt = await self._restore(session)
            if not rt.state.terminal:
                restored += 1
                log.info(f"Resumable upload {session.filename} ({session.session_id}) "
                         f"at chunk {rt.accepted}, {rt.received_bytes} bytes")
        return restored

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------
    async def start(self, file_name, folder_id: Optional[int] = None, declared_size: Optional[int] = None,
                    total_chunks: Optional[int] = None, client_token: Optional[str] = None) -> str:
        name = clean_name(file_name)
        if declared_size is not None and (not isinstance(declared_size, int) or declared_size < 0):
            raise InvalidRequest(f"invalid declared size {declared_size!r}")
        if total_chunks is not None and (not isinstance(total_chunks, int) or total_chunks < 0):
            raise InvalidRequest(f"invalid chunk count {total_chunks!r}")
        if declared_size is not None and total_chunks is not None:
            if total_chunks * self.ctx.config.chunk_size < declared_size:
                raise InvalidRequest(f"{total_chunks} chunk(s) cannot hold {declared_size} bytes at "
                                     f"{self.ctx.config.chunk_size} bytes per chunk")

        if not client_token:
            return await self._create(name, folder_id, declared_size, total_chunks, None)
        # only retries carrying the same token wait for each other
        async with self._token_locks.setdefault(client_token, asyncio.Lock()):
            for rt in self._runtimes.values():
                if rt.session.client_token == client_token and not rt.state.terminal:
                    log.info(f"Upload start retried with token {client_token} -> {rt.session.session_id}")
                    return rt.session.session_id
            return await self._create(name, folder_id, declared_size, total_chunks, client_token)

    async def _create(self, name: str, folder_id: Optional[int], declared_size: Optional[int],
                      total_chunks: Optional[int], client_token: Optional[str]) -> str:
        folder = await self.registry.get_folder(folder_id) if folder_id is not None else None
        channels = {PRIMARY: await self.folders.ensure_channel(folder_id)}
        backup = self.ctx.backup
        if backup is not None:
            cfg = self.ctx.config
            channels[BACKUP] = await call_with_retries(
                lambda: backup.provision_channel(folder.name if folder else ROOT_CHANNEL_NAME),
                attempts=cfg.send_retries, backoff_factor=cfg.retry_backoff, what="provision backup chat")

        file_id = self.registry.new_id()
        await self.registry.add_file(FileRecord(
            id=file_id,
            name=name,
            folder_id=folder_id,
            folder_name=folder.name if folder else None,
            channel_name=folder.name if folder else ROOT_CHANNEL_NAME,
            chunk_size=self.ctx.config.chunk_size,
        ))
        session = UploadSession(
            session_id=uuid.uuid4().hex,
            file_id=file_id,
            filename=name,
            folder_id=folder_id,
            declared_size=declared_size,
            total_chunks=total_chunks,
            channels=channels,
            last_activity=self.ctx.clock(),
            client_token=client_token,
        )
        await self.registry.save_session(session)
        self._attach(session)
        log.info(f"Upload started: {name} -> file {file_id}, session {session.session_id}"
                 f"{f', {declared_size} bytes' if declared_size is not None else ''}")
        return session.session_id

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------
    def _check_open(self, rt: _Runtime, index: int):
        session = rt.session
        if session.state == SessionState.ABORTED:
            raise SessionAborted(f"upload was aborted: {session.abort_reason}", session_id=session.session_id,
                                 chunk_index=index)
        if session.state in (SessionState.FINALIZING, SessionState.COMMITTED):
            raise ProtocolError(f"upload is {session.state.value}", session_id=session.session_id,
                                chunk_index=index)

    def _check_next(self, rt: _Runtime, index: int, data: bytes) -> bool:
        """Raise unless ``index`` may be accepted now; False means it is a duplicate."""
        session = rt.session
        if rt.state != SessionState.ABORTED and index < rt.accepted:
            return False
        self._check_open(rt, index)
        if index != rt.accepted:
            raise OutOfOrder(f"expected chunk {rt.accepted}", session_id=session.session_id, chunk_index=index,
                             expected=rt.accepted)
        if session.total_chunks and index >= session.total_chunks:
            raise SizeExceeded(f"upload declared {session.total_chunks} chunk(s)",
                               session_id=session.session_id, chunk_index=index)
        if session.declared_size is not None and rt.received_bytes + len(data) > session.declared_size:
            raise SizeExceeded(f"upload declared {session.declared_size} bytes",
                               session_id=session.session_id, chunk_index=index)
        return True

    async def submit_chunk(self, session_id: str, index: int, data: bytes) -> bool:
        """Accept chunk ``index``; returns False when it was already accepted."""
        rt = await self._runtime(session_id)
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise InvalidRequest(f"invalid chunk index {index!r}", session_id=session_id)
        if rt.state != SessionState.ABORTED and index < rt.accepted:
            return False
        self._check_open(rt, index)
        if not data:
            raise InvalidRequest("empty chunk", session_id=session_id, chunk_index=index)
        if len(data) > self.ctx.config.chunk_size:
            raise ChunkTooLarge(f"chunk is {len(data)} bytes, limit is {self.ctx.config.chunk_size}",
                                session_id=session_id, chunk_index=index)
        # reject before queueing for a dispatch slot
        async with rt.lock:
            if not self._check_next(rt, index, data):
                return False

        await rt.slots.acquire()
        dispatched = False
        try:
            async with rt.lock:
                session = rt.session
                if not self._check_next(rt, index, data):
                    return False
                if session.state == SessionState.CREATED:
                    session.state = SessionState.RECEIVING
                    session.last_activity = self.ctx.clock()
                    await self.registry.save_session(session)
                    # not every abort path takes the lock
                    self._check_open(rt, index)

                rt.accepted += 1
                rt.received_bytes += len(data)
                if rt.hasher is not None:
                    rt.hasher.update(data)
                session.last_activity = self.ctx.clock()
                task = asyncio.create_task(self._dispatch(rt, index, bytes(data)))
                rt.inflight.add(task)
                task.add_done_callback(rt.inflight.discard)
                dispatched = True
        finally:
            if not dispatched:
                rt.slots.release()
        log.debug(f"Chunk {index} of {session.filename} accepted ({len(data)} bytes)")
        return True

    async def _dispatch(self, rt: _Runtime, index: int, data: bytes):
        try:
            result = await self._send_chunk(rt.session, index, data)
            rt.sent.append(result[0])
            if result[1] is not None:
                rt.sent.append(result[1])
            await rt.completions.put((index, result, None))
        except DriveError as e:
            await rt.completions.put((index, None, e))
        except Exception as e:
            log.error(f"Unexpected error sending chunk {index} of {rt.session.filename}: {e}", exc_info=True)
            await rt.completions.put((index, None, PermanentRejection(str(e), chunk_index=index)))
        finally:
            rt.slots.release()

    async def _send_chunk(self, session: UploadSession, index: int, data: bytes) -> SendResult:
        ctx = self.ctx
        cfg = ctx.config
        digest = codec.checksum(data)
        payload = codec.pack(index, data, ctx.cipher)
        filename = codec.part_filename(session.file_id, index, digest, ctx.cipher is not None)
        caption = f"📤 `{session.filename}` part {index + 1}"
        if session.total_chunks:
            caption += f"/{session.total_chunks}"
        if ctx.cipher is not None:
            caption += " 🔐"

        def send_to(sender):
            return call_with_retries(
                lambda: sender.send(session.channels.get(sender.platform), index, payload, filename, caption),
                attempts=cfg.send_retries, backoff_factor=cfg.retry_backoff,
                what=f"send chunk {index} of {session.filename} to {sender.platform}")

        def as_ref(remote: RemoteRef) -> ChunkRef:
            return ChunkRef(index, remote, len(data), digest)

        backup = ctx.backup
        if backup is None:
            return as_ref(await send_to(ctx.primary)), None

        if not cfg.mirror_to_backup:
            try:
                return as_ref(await send_to(ctx.primary)), None
            except DriveError as e:
                log.warning(f"Primary send of chunk {index} failed ({e}) -> trying backup")
                try:
                    return as_ref(await send_to(backup)), None
                except DriveError as backup_error:
                    log.error(f"Backup send of chunk {index} failed as well: {backup_error}")
                    raise e

        primary_result, backup_result = await asyncio.gather(send_to(ctx.primary), send_to(backup),
                                                             return_exceptions=True)
        for outcome in (primary_result, backup_result):
            if isinstance(outcome, BaseException) and not isinstance(outcome, DriveError):
                raise outcome
        if not isinstance(primary_result, DriveError):
            if isinstance(backup_result, DriveError):
                log.warning(f"Backup copy of chunk {index} of {session.filename} failed: {backup_result}")
                return as_ref(primary_result), None
            return as_ref(primary_result), as_ref(backup_result)
        if not isinstance(backup_result, DriveError):
            log.warning(f"Primary send of chunk {index} failed ({primary_result}) -> recorded backup copy")
            return as_ref(backup_result), None
        raise primary_result

    async def _commit_loop(self, rt: _Runtime):
        ready: Dict[int, SendResult] = {}
        while True:
            item = await rt.completions.get()
            try:
                if item is None:
                    return
                index, result, error = item
                if rt.state == SessionState.ABORTED:
                    continue
                if error is not None:
                    error.session_id = rt.session.session_id
                    await self._abort(rt, f"chunk {index} could not be sent: {error.message}")
                    continue
                ready[index] = result
                while rt.session.committed_chunks in ready:
                    ref, replica = ready.pop(rt.session.committed_chunks)
                    try:
                        count = await self.registry.append_chunk(rt.session.file_id, ref, replica)
                    except DriveError as e:
                        if rt.state != SessionState.ABORTED:
                            await self._abort(rt, f"chunk {ref.index} could not be recorded: {e.message}")
                        ready.clear()
                        break
                    rt.session.committed_chunks = count
                    rt.session.received_bytes += ref.size or 0
                    rt.session.last_activity = self.ctx.clock()
                    await self.registry.save_session(rt.session)
            finally:
                rt.completions.task_done()

    async def _settle(self, rt: _Runtime):
        if rt.inflight:
            await asyncio.gather(*list(rt.inflight), return_exceptions=True)

    # ------------------------------------------------------------------
    # Finalize / cancel / abort
    # ------------------------------------------------------------------
    async def finalize(self, session_id: str, expected_checksum: Optional[str] = None) -> int:
        rt = await self._runtime(session_id)
        async with rt.lock:
            session = rt.session
            if session.state == SessionState.COMMITTED:
                return session.file_id
            self._check_open(rt, rt.accepted)
            session.state = SessionState.FINALIZING
            try:
                await self._settle(rt)
                await rt.completions.join()
                if rt.state == SessionState.ABORTED:
                    raise SessionAborted(f"upload was aborted: {session.abort_reason}", session_id=session_id)
                if session.declared_size is not None and rt.received_bytes != session.declared_size:
                    raise Incomplete(f"received {rt.received_bytes} of {session.declared_size} bytes",
                                     session_id=session_id, file_id=session.file_id)
                if session.total_chunks and session.committed_chunks != session.total_chunks:
                    raise Incomplete(f"received {session.committed_chunks} of {session.total_chunks} chunks",
                                     session_id=session_id, file_id=session.file_id)
                digest = rt.hasher.hexdigest() if rt.hasher is not None else await self._recompute(session)
                if expected_checksum and digest != expected_checksum.strip().lower():
                    raise ChecksumMismatch(f"file checksum is {digest}", session_id=session_id,
                                           file_id=session.file_id)
                record = await self.registry.seal_file(session.file_id, rt.received_bytes, digest)
                if session.state != SessionState.FINALIZING:
                    raise SessionAborted(f"upload was aborted: {session.abort_reason}", session_id=session_id)
            except DriveError:
                if session.state == SessionState.FINALIZING:
                    session.state = SessionState.RECEIVING
                raise
            session.state = SessionState.COMMITTED
            session.last_activity = self.ctx.clock()
            await self.registry.save_session(session)
            await rt.completions.put(None)
        log.info(f"Upload committed: {record.name} ({record.id}) {record.size} bytes in "
                 f"{len(record.chunks)} chunk(s), method={record.method}")
        return record.id

    async def _recompute(self, session: UploadSession) -> str:
        record = await self.registry.get_file(session.file_id)
        hasher = hashlib.sha256()
        stream = self.downloads.stream_record(record)
        try:
            async for piece in stream:
                hasher.update(piece)
        finally:
            await stream.aclose()
        return hasher.hexdigest()

    async def cancel(self, session_id: str):
        rt = await self._runtime(session_id)
        # waits out a running submit or finalize
        async with rt.lock:
            if rt.state == SessionState.COMMITTED:
                raise ProtocolError("upload is already committed", session_id=session_id)
            await self._abort(rt, "cancelled by client")

    async def _abort(self, rt: _Runtime, reason: str):
        session = rt.session
        if session.state.terminal:
            return
        session.state = SessionState.ABORTED
        session.abort_reason = reason
        log.warning(f"Upload aborted: {session.filename} ({session.session_id}): {reason}")
        await self._settle(rt)

        refs: Dict[Tuple[str, int], ChunkRef] = {}
        record = await self.registry.discard_file(session.file_id)
        for ref in (record.all_refs() if record is not None else []) + rt.sent:
            refs[(ref.platform, ref.remote.message_id)] = ref
        deleted = 0
        for ref in refs.values():
            sender = self.ctx.sender_for(ref.platform)
            if sender is not None and await sender.delete(ref.remote):
                deleted += 1
        if refs:
            log.info(f"Cleaned up {deleted}/{len(refs)} remote part(s) of {session.filename}")
        session.last_activity = self.ctx.clock()
        await self.registry.save_session(session)
        if rt.committer is not None:
            await rt.completions.put(None)

    # ------------------------------------------------------------------
    # Status / expiry
    # ------------------------------------------------------------------
    async def status(self, session_id: str) -> Dict[str, Any]:
        rt = await self._runtime(session_id)
        session = rt.session
        return {
            "session_id": session.session_id,
            "file_id": session.file_id,
            "filename": session.filename,
            "folder_id": session.folder_id,
            "state": session.state.value,
            "next_index": rt.accepted,
            "committed_chunks": session.committed_chunks,
            "in_flight": len(rt.inflight),
            "received_bytes": rt.received_bytes,
            "declared_size": session.declared_size,
            "total_chunks": session.total_chunks,
            "created_at": session.created_at,
            "abort_reason": session.abort_reason,
        }

    async def sweep(self, now: Optional[float] = None) -> int:
        """Abort idle sessions and forget old terminal ones; returns the abort count."""
        now = self.ctx.clock() if now is None else now
        ttl = self.ctx.config.session_ttl
        expired = 0
        for stored in await self.registry.sessions():
            rt = await self._runtime(stored.session_id)
            session = rt.session
            idle = now - session.last_activity
            if idle <= ttl:
                continue
            if session.state.terminal:
                await self.registry.drop_session(session.session_id)
                self._runtimes.pop(session.session_id, None)
                token_lock = self._token_locks.get(session.client_token) if session.client_token else None
                if token_lock is not None and not token_lock.locked():
                    del self._token_locks[session.client_token]
                log.debug(f"Forgot {session.state.value} session {session.session_id}")
            elif not rt.inflight and not rt.lock.locked():
                async with rt.lock:
                    if rt.state.terminal:
                        continue
                    await self._abort(rt, f"expired after {idle:.0f}s without activity")
                expired += 1
        if expired:
            log.info(f"Session sweep aborted {expired} stalled upload(s)")
        return expired

    async def run_gc(self):
        interval = self.ctx.config.gc_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                log.error(f"Session sweep failed: {e}", exc_info=True)

    async def close(self):
        for rt in list(self._runtimes.values()):
            if rt.committer is None or rt.committer.done():
                continue
            await self._settle(rt)
            await rt.completions.join()
            await rt.completions.put(None)
            await rt.committer
        self._runtimes.clear()

    # ------------------------------------------------------------------
    # Whole-stream upload
    # ------------------------------------------------------------------
    async def upload_stream(self, file_name, folder_id: Optional[int], stream, declared_size: Optional[int] = None,
                            expected_checksum: Optional[str] = None) -> int:
        """Upload everything ``stream`` yields; accepts sync or async ``read(n)``."""
        session_id = await self.start(file_name, folder_id, declared_size)
        chunk_size = self.ctx.config.chunk_size
        try:
            if inspect.iscoroutinefunction(stream.read):
                async for chunk in codec.asplit(stream, chunk_size):
                    await self.submit_chunk(session_id, chunk.index, chunk.data)
            else:
                for chunk in codec.split(stream, chunk_size):
                    await self.submit_chunk(session_id, chunk.index, chunk.data)
            return await self.finalize(session_id, expected_checksum)
        except (Exception, asyncio.CancelledError):
            rt = self._runtimes.get(session_id)
            if rt is not None and not rt.state.terminal:
                await self._abort(rt, "stream upload failed")
            raise
