import asyncio
from typing import Dict, List, Optional, Tuple

from .context import DriveContext
from .errors import CycleDetected, InvalidRequest, NotEmpty
from .log import logger as log
from .models import FileRecord, FileStatus, FolderRecord
from .retry import call_with_retries

ROOT_CHANNEL_KEY = "root_channel_id"
ROOT_CHANNEL_NAME = "drive-root"


def clean_name(name) -> str:
    name = (name or "").strip() if isinstance(name, str) else ""
    if not name:
        raise InvalidRequest("name cannot be empty")
    if "/" in name or "\\" in name:
        raise InvalidRequest("name cannot contain path separators")
    return name[:255]


class FolderTree:
    """Folder hierarchy on top of the registry.

    Every operation edits metadata only; chunk bytes already sent stay where
    they are. Remote channels for folders are created on first use.
    """

    def __init__(self, ctx: DriveContext):
        self.ctx = ctx
        self.registry = ctx.registry
        self._channel_locks: Dict[Optional[int], asyncio.Lock] = {}

    async def create(self, name, parent_id: Optional[int] = None) -> FolderRecord:
        name = clean_name(name)
        if parent_id is not None:
            await self.registry.get_folder(parent_id)
        folder = FolderRecord(id=self.registry.new_id(), name=name, parent_id=parent_id)
        folder = await self.registry.add_folder(folder)
        log.info(f"Folder created: {name} ({folder.id}) under {parent_id or 'root'}")
        return folder

    async def list_folder(self, folder_id: Optional[int] = None) -> Tuple[List[FolderRecord], List[FileRecord]]:
        if folder_id is not None:
            await self.registry.get_folder(folder_id)
        folders, files = await self.registry.children(folder_id)
        return folders, [f for f in files if f.status == FileStatus.COMPLETE]

    async def path(self, folder_id: Optional[int]) -> List[FolderRecord]:
        chain = []
        seen = set()
        while folder_id is not None and folder_id not in seen:
            seen.add(folder_id)
            folder = await self.registry.get_folder(folder_id)
            chain.append(folder)
            folder_id = folder.parent_id
        return list(reversed(chain))

    async def rename(self, node_id: int, name):
        name = clean_name(name)
        if self.registry.has_folder(node_id):
            return await self.registry.update_folder(node_id, name=name)
        return await self.registry.update_file(node_id, name=name)

    async def move(self, node_id: int, new_parent_id: Optional[int]):
        parent = None
        if new_parent_id is not None:
            parent = await self.registry.get_folder(new_parent_id)
        if not self.registry.has_folder(node_id):
            await self.registry.get_file(node_id)
            return await self.registry.update_file(node_id, folder_id=new_parent_id,
                                                   folder_name=parent.name if parent else None)
        cursor = new_parent_id
        seen = set()
        while cursor is not None and cursor not in seen:
            if cursor == node_id:
                raise CycleDetected(f"folder {node_id} cannot move under itself or its descendant {new_parent_id}")
            seen.add(cursor)
            cursor = (await self.registry.get_folder(cursor)).parent_id
        return await self.registry.update_folder(node_id, parent_id=new_parent_id)

    async def delete(self, folder_id: int, force: bool = False):
        folder = await self.registry.get_folder(folder_id)
        subfolders, files = await self.registry.children(folder_id)
        if (subfolders or files) and not force:
            raise NotEmpty(f"folder {folder.name} holds {len(subfolders)} folder(s) and {len(files)} file(s)")
        for sub in subfolders:
            await self.delete(sub.id, force=True)
        for record in files:
            await self._purge_file(record)
        if folder.channel_id:
            await self.ctx.primary.release_channel(folder.channel_id)
        await self.registry.remove_folder(folder_id)
        log.info(f"Folder deleted: {folder.name} ({folder_id}), {len(files)} file(s) purged")

    async def delete_file(self, file_id: int) -> FileRecord:
        record = await self.registry.get_file(file_id)
        await self._purge_file(record)
        return record

    async def _purge_file(self, record: FileRecord):
        deleted = 0
        refs = record.all_refs()
        for ref in refs:
            sender = self.ctx.sender_for(ref.platform)
            if sender is None:
                log.warning(f"No {ref.platform} sender configured, leaving part {ref.index} of {record.id} behind")
                continue
            if await sender.delete(ref.remote):
                deleted += 1
        await self.registry.discard_file(record.id)
        log.info(f"File removed: {record.name} ({record.id}), {deleted}/{len(refs)} remote part(s) deleted")

    async def ensure_channel(self, folder_id: Optional[int]) -> str:
        lock = self._channel_locks.setdefault(folder_id, asyncio.Lock())
        async with lock:
            if folder_id is None:
                existing = self.registry.get_meta(ROOT_CHANNEL_KEY)
                if existing:
                    return existing
                channel = await self._provision(ROOT_CHANNEL_NAME)
                await self.registry.set_meta(ROOT_CHANNEL_KEY, channel)
                return channel
            folder = await self.registry.get_folder(folder_id)
            if folder.channel_id:
                return folder.channel_id
            channel = await self._provision(folder.name)
            await self.registry.update_folder(folder_id, channel_id=channel)
            return channel

    async def _provision(self, name: str) -> str:
        cfg = self.ctx.config
        return await call_with_retries(lambda: self.ctx.primary.provision_channel(name), attempts=cfg.send_retries,
                                       backoff_factor=cfg.retry_backoff, what=f"create channel {name}")
