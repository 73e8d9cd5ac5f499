import asyncio
import copy
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiofiles

from .errors import FileNotFound, FolderNotFound, IntegrityError, OutOfOrder, ProtocolError
from .log import logger as log
from .models import (
    MB, PRIMARY, ChunkRef, FileRecord, FileStatus, FolderRecord, UploadSession, display_time, utcnow_iso,
)

ANY_FOLDER = object()


class PartRegistry:
    """Durable store for files, folders, upload sessions and drive meta.

    Every mutation is applied under one lock and written through to disk
    before the lock is released. Callers always receive copies, so the only
    way to change persisted state is through this class.
    """

    def __init__(self, data_dir, history_file: str = "file_history.json",
                 folders_file: str = "folders.json", sessions_file: str = "upload_sessions.json",
                 meta_file: str = "drive_meta.json"):
        self.data_dir = Path(data_dir)
        self.history_path = self.data_dir / history_file
        self.folders_path = self.data_dir / folders_file
        self.sessions_path = self.data_dir / sessions_file
        self.meta_path = self.data_dir / meta_file
        self._lock = asyncio.Lock()
        self._files: Dict[int, FileRecord] = {}
        self._folders: Dict[int, FolderRecord] = {}
        self._sessions: Dict[str, UploadSession] = {}
        self._meta: Dict[str, Any] = {}
        self._last_id = 0

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    async def load(self):
        self.data_dir.mkdir(parents=True, exist_ok=True)
        async with self._lock:
            history = await self._read_json(self.history_path, [])
            folders = await self._read_json(self.folders_path, [])
            sessions = await self._read_json(self.sessions_path, {})
            self._meta = await self._read_json(self.meta_path, {})
            self._files = {}
            for item in history if isinstance(history, list) else []:
                try:
                    record = FileRecord.from_dict(item)
                except (KeyError, TypeError, ValueError) as e:
                    log.warning(f"Skipping unreadable history entry {item!r:.80}: {e}")
                    continue
                self._files[record.id] = record
            self._folders = {}
            for item in folders if isinstance(folders, list) else []:
                try:
                    folder = FolderRecord.from_dict(item)
                except (KeyError, TypeError, ValueError) as e:
                    log.warning(f"Skipping unreadable folder entry {item!r:.80}: {e}")
                    continue
                self._folders[folder.id] = folder
            self._sessions = {}
            for sid, item in (sessions.items() if isinstance(sessions, dict) else []):
                try:
                    self._sessions[sid] = UploadSession.from_dict(item)
                except (KeyError, TypeError, ValueError) as e:
                    log.warning(f"Skipping unreadable upload session {sid}: {e}")
            self._last_id = max([0, *self._files, *self._folders])
        log.info(f"Registry loaded: {len(self._files)} files, {len(self._folders)} folders, "
                 f"{len(self._sessions)} sessions from {self.data_dir}")

    async def _read_json(self, path: Path, default):
        if not path.exists():
            return default
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as e:
            backup = path.with_name(f"{path.name}.corrupt-{int(time.time())}")
            log.error(f"Failed to load {path.name}: {e}; keeping a copy at {backup.name}")
            try:
                os.replace(path, backup)
            except OSError:
                log.error(f"Could not move aside {path.name}", exc_info=True)
            return default

    async def _write_json(self, path: Path, data):
        tmp = path.with_name(path.name + ".tmp")
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write(json.dumps(data, indent=2, ensure_ascii=False))
        os.replace(tmp, path)

    async def _save_files(self):
        await self._write_json(self.history_path, [r.to_dict() for r in self._files.values()])

    async def _save_folders(self):
        await self._write_json(self.folders_path, [f.to_dict() for f in self._folders.values()])

    async def _save_sessions(self):
        await self._write_json(self.sessions_path, {sid: s.to_dict() for sid, s in self._sessions.items()})

    async def _save_meta(self):
        await self._write_json(self.meta_path, self._meta)

    def new_id(self) -> int:
        self._last_id = max(int(time.time() * 1000), self._last_id + 1)
        return self._last_id

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------
    def _require_file(self, file_id) -> FileRecord:
        record = self._files.get(file_id)
        if record is None:
            raise FileNotFound("file not found", file_id=file_id)
        return record

    async def get_file(self, file_id) -> FileRecord:
        return copy.deepcopy(self._require_file(file_id))

    async def files(self, folder_id=ANY_FOLDER, include_pending: bool = False) -> List[FileRecord]:
        result = []
        for record in self._files.values():
            if not include_pending and record.status != FileStatus.COMPLETE:
                continue
            if folder_id is not ANY_FOLDER and record.folder_id != folder_id:
                continue
            result.append(copy.deepcopy(record))
        return result

    async def search(self, query: str, limit: int = 100) -> List[FileRecord]:
        needle = (query or "").strip().lower()
        if not needle:
            return []
        hits = [r for r in self._files.values()
                if r.status == FileStatus.COMPLETE and needle in r.name.lower()]
        hits.sort(key=lambda r: r.updated_at, reverse=True)
        return [copy.deepcopy(r) for r in hits[:limit]]

    async def add_file(self, record: FileRecord) -> FileRecord:
        async with self._lock:
            if record.id in self._files:
                raise ProtocolError("file id already exists", file_id=record.id)
            record.extra.setdefault("sent_at", display_time())
            self._files[record.id] = copy.deepcopy(record)
            await self._save_files()
        return copy.deepcopy(record)

    async def append_chunk(self, file_id, ref: ChunkRef, replica: Optional[ChunkRef] = None) -> int:
        """Commit one acknowledged chunk; returns the new committed count."""
        async with self._lock:
            record = self._require_file(file_id)
            if record.status != FileStatus.PENDING:
                raise ProtocolError("file is already sealed", file_id=file_id, chunk_index=ref.index)
            if ref.index != record.next_index:
                raise OutOfOrder(f"commit out of order, next is {record.next_index}", file_id=file_id,
                                 chunk_index=ref.index, expected=record.next_index)
            record.chunks.append(ref)
            if replica is not None:
                record.replicas[ref.index] = replica
            record.updated_at = utcnow_iso()
            await self._save_files()
            return len(record.chunks)

    async def seal_file(self, file_id, size: int, checksum: Optional[str]) -> FileRecord:
        async with self._lock:
            record = self._require_file(file_id)
            previous = record.size
            record.size = size
            if not record.is_contiguous():
                record.size = previous
                raise IntegrityError("chunk list is not contiguous", file_id=file_id)
            record.checksum = checksum
            record.status = FileStatus.COMPLETE
            record.extra["method_key"] = record.method
            record.updated_at = utcnow_iso()
            await self._save_files()
            return copy.deepcopy(record)

    async def update_file(self, file_id, **changes) -> FileRecord:
        async with self._lock:
            record = self._require_file(file_id)
            for key in ("name", "folder_id", "folder_name", "status"):
                if key in changes:
                    setattr(record, key, changes[key])
            record.updated_at = utcnow_iso()
            await self._save_files()
            return copy.deepcopy(record)

    async def remove_file(self, file_id) -> FileRecord:
        async with self._lock:
            record = self._require_file(file_id)
            del self._files[file_id]
            await self._save_files()
            return record

    async def discard_file(self, file_id) -> Optional[FileRecord]:
        async with self._lock:
            record = self._files.pop(file_id, None)
            if record is not None:
                await self._save_files()
            return record

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------
    def _require_folder(self, folder_id) -> FolderRecord:
        folder = self._folders.get(folder_id)
        if folder is None:
            raise FolderNotFound(f"folder {folder_id} not found")
        return folder

    def has_folder(self, folder_id) -> bool:
        return folder_id in self._folders

    async def get_folder(self, folder_id) -> FolderRecord:
        return copy.deepcopy(self._require_folder(folder_id))

    async def folders(self) -> List[FolderRecord]:
        return [copy.deepcopy(f) for f in self._folders.values()]

    async def children(self, folder_id) -> Tuple[List[FolderRecord], List[FileRecord]]:
        subfolders = [copy.deepcopy(f) for f in self._folders.values() if f.parent_id == folder_id]
        files = [copy.deepcopy(r) for r in self._files.values() if r.folder_id == folder_id]
        return subfolders, files

    async def add_folder(self, folder: FolderRecord) -> FolderRecord:
        async with self._lock:
            if folder.id in self._folders:
                raise ProtocolError(f"folder id {folder.id} already exists")
            self._folders[folder.id] = copy.deepcopy(folder)
            await self._save_folders()
        return copy.deepcopy(folder)

    async def update_folder(self, folder_id, **changes) -> FolderRecord:
        async with self._lock:
            folder = self._require_folder(folder_id)
            for key in ("name", "parent_id", "channel_id"):
                if key in changes:
                    setattr(folder, key, changes[key])
            await self._save_folders()
            if "name" in changes:
                renamed = False
                for record in self._files.values():
                    if record.folder_id == folder_id:
                        record.folder_name = folder.name
                        renamed = True
                if renamed:
                    await self._save_files()
            return copy.deepcopy(folder)

    async def remove_folder(self, folder_id) -> FolderRecord:
        async with self._lock:
            folder = self._require_folder(folder_id)
            del self._folders[folder_id]
            await self._save_folders()
            return folder

    # ------------------------------------------------------------------
    # Upload sessions
    # ------------------------------------------------------------------
    async def get_session(self, session_id: str) -> Optional[UploadSession]:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session is not None else None

    async def sessions(self) -> List[UploadSession]:
        return [copy.deepcopy(s) for s in self._sessions.values()]

    async def save_session(self, session: UploadSession):
        async with self._lock:
            self._sessions[session.session_id] = copy.deepcopy(session)
            await self._save_sessions()

    async def drop_session(self, session_id: str):
        async with self._lock:
            if self._sessions.pop(session_id, None) is not None:
                await self._save_sessions()

    # ------------------------------------------------------------------
    # Meta / maintenance
    # ------------------------------------------------------------------
    def get_meta(self, key: str, default=None):
        return copy.deepcopy(self._meta.get(key, default))

    async def set_meta(self, key: str, value):
        async with self._lock:
            self._meta[key] = value
            await self._save_meta()

    async def forget_channel(self, channel_id) -> int:
        """Forget a remote channel which no longer exists; returns how many records were dropped.

        Chunks lost with the channel are replaced by their backup replicas when
        every one of them has a replica. Records that cannot be repaired that way
        are dropped.
        """
        channel_id = str(channel_id)
        async with self._lock:
            doomed = []
            promoted = []
            for fid, record in self._files.items():
                lost = [pos for pos, c in enumerate(record.chunks)
                        if c.platform == PRIMARY and c.remote.channel_id == channel_id]
                if not lost:
                    continue
                if all(record.chunks[pos].index in record.replicas for pos in lost):
                    for pos in lost:
                        record.chunks[pos] = record.replicas.pop(record.chunks[pos].index)
                    if record.status == FileStatus.COMPLETE:
                        record.extra["method_key"] = record.method
                    record.updated_at = utcnow_iso()
                    promoted.append(fid)
                else:
                    doomed.append(fid)
            for fid in doomed:
                del self._files[fid]
            if doomed or promoted:
                await self._save_files()
            cleared = False
            for folder in self._folders.values():
                if folder.channel_id == channel_id:
                    folder.channel_id = None
                    cleared = True
            if cleared:
                await self._save_folders()
            if self._meta.get("root_channel_id") == channel_id:
                del self._meta["root_channel_id"]
                await self._save_meta()
        if promoted:
            log.info(f"Channel {channel_id} deleted -> {len(promoted)} file(s) now served from backup copies")
        if doomed:
            log.info(f"Channel {channel_id} deleted -> removed {len(doomed)} file(s) from history")
        return len(doomed)

    async def stats(self) -> Dict[str, Any]:
        complete = [r for r in self._files.values() if r.status == FileStatus.COMPLETE]
        total = 0
        parts: Dict[str, int] = {}
        for record in complete:
            if record.size is not None:
                total += record.size
            else:
                total += int(float(record.extra.get("size_mb") or 0) * MB)
            for ref in record.all_refs():
                parts[ref.platform] = parts.get(ref.platform, 0) + 1
        live = sum(1 for s in self._sessions.values() if not s.state.terminal)
        return {
            "files": len(complete),
            "folders": len(self._folders),
            "total_size": total,
            "parts": parts,
            "active_uploads": live,
        }
