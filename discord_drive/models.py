"""
Records persisted by the part registry.

The JSON shapes stay field-compatible with the history / folders / sessions
documents written by earlier releases: legacy keys are always written, new
keys are optional, and unknown keys are carried through a rewrite untouched.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

MB = 1024 * 1024

PRIMARY = "discord"
BACKUP = "telegram"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def display_time() -> str:
    return datetime.now().strftime("%d/%m/%Y %H:%M")


def parse_id(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


class FileStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"

    @classmethod
    def parse(cls, value) -> "FileStatus":
        if value in ("pending", "uploading"):
            return cls.PENDING
        if value in ("failed", "error"):
            return cls.FAILED
        # legacy history only ever held finished uploads ("done", "success", ...)
        return cls.COMPLETE


class SessionState(str, Enum):
    CREATED = "created"
    RECEIVING = "receiving"
    FINALIZING = "finalizing"
    COMMITTED = "committed"
    ABORTED = "aborted"

    @classmethod
    def parse(cls, value) -> "SessionState":
        if value == "uploading":
            return cls.RECEIVING
        try:
            return cls(value)
        except ValueError:
            return cls.ABORTED

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMMITTED, SessionState.ABORTED)


# ------------------------------------------------------------------
# Chunk references
# ------------------------------------------------------------------
@dataclass(frozen=True)
class RemoteRef:
    platform: str
    message_id: int
    channel_id: Optional[str] = None
    file_id: Optional[str] = None
    jump_url: Optional[str] = None


@dataclass(frozen=True)
class ChunkRef:
    index: int
    remote: RemoteRef
    size: Optional[int] = None
    checksum: Optional[str] = None

    @property
    def platform(self) -> str:
        return self.remote.platform

    def to_dict(self) -> Dict[str, Any]:
        return {
            "part": self.index + 1,
            "platform": self.remote.platform,
            "message_id": self.remote.message_id,
            "channel_id": self.remote.channel_id,
            "file_id": self.remote.file_id,
            "jump_url": self.remote.jump_url,
            "size": self.size,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkRef":
        channel_id = data.get("channel_id")
        return cls(
            index=int(data["part"]) - 1,
            remote=RemoteRef(
                platform=data.get("platform") or PRIMARY,
                message_id=int(data.get("message_id") or 0),
                channel_id=str(channel_id) if channel_id is not None else None,
                file_id=data.get("file_id"),
                jump_url=data.get("jump_url"),
            ),
            size=data.get("size"),
            checksum=data.get("checksum"),
        )


# ------------------------------------------------------------------
# Files
# ------------------------------------------------------------------
FILE_OWNED_KEYS = {
    "id", "filename", "folder_id", "folder_name", "channel_id", "channel_name", "status",
    "method", "parts", "parts_info", "replicas_info", "message_ids", "jump_url",
    "size", "chunk_size", "checksum", "created_at", "updated_at",
}


@dataclass
class FileRecord:
    id: int
    name: str
    folder_id: Optional[int] = None
    size: Optional[int] = None
    chunk_size: Optional[int] = None
    checksum: Optional[str] = None
    chunks: List[ChunkRef] = field(default_factory=list)
    replicas: Dict[int, ChunkRef] = field(default_factory=dict)
    status: FileStatus = FileStatus.PENDING
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    folder_name: Optional[str] = None
    channel_name: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def next_index(self) -> int:
        return len(self.chunks)

    @property
    def received_size(self) -> int:
        return sum(c.size or 0 for c in self.chunks)

    @property
    def method(self) -> str:
        if self.replicas:
            return "dual"
        return "direct" if len(self.chunks) <= 1 else "split"

    def replica_for(self, index: int) -> Optional[ChunkRef]:
        return self.replicas.get(index)

    def all_refs(self) -> List[ChunkRef]:
        return list(self.chunks) + [self.replicas[i] for i in sorted(self.replicas)]

    def is_contiguous(self) -> bool:
        if [c.index for c in self.chunks] != list(range(len(self.chunks))):
            return False
        if self.size is None or any(c.size is None for c in self.chunks):
            return True
        return self.received_size == self.size

    def to_dict(self) -> Dict[str, Any]:
        first = self.chunks[0].remote if self.chunks else None
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "filename": self.name,
            "channel_id": (first.channel_id or "") if first else data.get("channel_id", ""),
            "channel_name": self.channel_name or "",
            "folder_id": self.folder_id,
            "folder_name": self.folder_name,
            "status": self.status.value,
            "method": self.method,
            "parts": len(self.chunks),
            "parts_info": [c.to_dict() for c in self.chunks],
            "replicas_info": [self.replicas[i].to_dict() for i in sorted(self.replicas)],
            "message_ids": [c.remote.message_id for c in self.chunks],
            "jump_url": first.jump_url if first else None,
            "size": self.size,
            "chunk_size": self.chunk_size,
            "checksum": self.checksum,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        })
        if self.size is not None:
            data["size_mb"] = round(self.size / MB, 2)
        data.setdefault("size_mb", 0.0)
        data.setdefault("method_key", self.method)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        chunks = [ChunkRef.from_dict(p) for p in data.get("parts_info") or []]
        if not chunks and data.get("message_ids"):
            # legacy rows: all Discord, one flat message id list in the record channel
            channel_id = data.get("channel_id")
            chunks = [
                ChunkRef(i, RemoteRef(PRIMARY, int(mid), str(channel_id) if channel_id else None))
                for i, mid in enumerate(data["message_ids"])
            ]
        chunks.sort(key=lambda c: c.index)
        replicas = {}
        for item in data.get("replicas_info") or []:
            ref = ChunkRef.from_dict(item)
            replicas[ref.index] = ref
        return cls(
            id=int(data["id"]),
            name=data.get("filename") or "",
            folder_id=parse_id(data.get("folder_id")),
            size=data.get("size"),
            chunk_size=data.get("chunk_size"),
            checksum=data.get("checksum"),
            chunks=chunks,
            replicas=replicas,
            status=FileStatus.parse(data.get("status")),
            created_at=data.get("created_at") or data.get("sent_at") or utcnow_iso(),
            updated_at=data.get("updated_at") or data.get("created_at") or utcnow_iso(),
            folder_name=data.get("folder_name"),
            channel_name=data.get("channel_name") or None,
            extra={k: v for k, v in data.items() if k not in FILE_OWNED_KEYS},
        )


# ------------------------------------------------------------------
# Folders
# ------------------------------------------------------------------
FOLDER_OWNED_KEYS = {"id", "name", "parent_id", "channel_id", "created_at"}


@dataclass
class FolderRecord:
    id: int
    name: str
    parent_id: Optional[int] = None
    channel_id: Optional[str] = None
    created_at: str = field(default_factory=display_time)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "name": self.name,
            "parent_id": self.parent_id,
            "channel_id": self.channel_id,
            "created_at": self.created_at,
        })
        data.setdefault("discord_category_id", 0)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FolderRecord":
        channel_id = data.get("channel_id")
        return cls(
            id=int(data["id"]),
            name=data.get("name") or "",
            parent_id=parse_id(data.get("parent_id")),
            channel_id=str(channel_id) if channel_id else None,
            created_at=data.get("created_at") or display_time(),
            extra={k: v for k, v in data.items() if k not in FOLDER_OWNED_KEYS},
        )


# ------------------------------------------------------------------
# Upload sessions
# ------------------------------------------------------------------
SESSION_OWNED_KEYS = {
    "session_id", "file_id", "filename", "file_size", "declared_size", "total_chunks",
    "received_chunks", "received_bytes", "folder_id", "status", "channels", "created_at",
    "last_activity", "abort_reason", "client_token", "committed_chunks",
}


@dataclass
class UploadSession:
    session_id: str
    file_id: int
    filename: str
    folder_id: Optional[int] = None
    declared_size: Optional[int] = None
    total_chunks: Optional[int] = None
    state: SessionState = SessionState.CREATED
    received_bytes: int = 0
    committed_chunks: int = 0
    channels: Dict[str, str] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)
    last_activity: float = 0.0
    abort_reason: Optional[str] = None
    client_token: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "session_id": self.session_id,
            "file_id": self.file_id,
            "filename": self.filename,
            "file_size": self.declared_size or 0,
            "declared_size": self.declared_size,
            "total_chunks": self.total_chunks or 0,
            "received_chunks": list(range(self.committed_chunks)),
            "committed_chunks": self.committed_chunks,
            "received_bytes": self.received_bytes,
            "folder_id": "" if self.folder_id is None else str(self.folder_id),
            "status": self.state.value,
            "channels": dict(self.channels),
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "abort_reason": self.abort_reason,
            "client_token": self.client_token,
        })
        data.setdefault("message", "")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UploadSession":
        declared = data.get("declared_size")
        if declared is None and data.get("file_size"):
            declared = data["file_size"]
        return cls(
            session_id=data["session_id"],
            file_id=int(data.get("file_id") or 0),
            filename=data.get("filename") or "",
            folder_id=parse_id(data.get("folder_id")),
            declared_size=declared,
            total_chunks=data.get("total_chunks") or None,
            state=SessionState.parse(data.get("status")),
            received_bytes=int(data.get("received_bytes") or 0),
            committed_chunks=int(data.get("committed_chunks") or len(data.get("received_chunks") or [])),
            channels=dict(data.get("channels") or {}),
            created_at=data.get("created_at") or utcnow_iso(),
            last_activity=float(data.get("last_activity") or 0.0),
            abort_reason=data.get("abort_reason"),
            client_token=data.get("client_token"),
            extra={k: v for k, v in data.items() if k not in SESSION_OWNED_KEYS},
        )
