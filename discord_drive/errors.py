"""
Error taxonomy shared by every drive component.

Each error can carry the file id, session id and chunk index it concerns so
user-visible failures always point at something an operator can fix.
"""
from typing import Any, Dict, Optional


class DriveError(Exception):
    http_status = 500
    code = "drive_error"

    def __init__(self, message: str = "", *, file_id=None, session_id: Optional[str] = None,
                 chunk_index: Optional[int] = None):
        self.message = message or self.__class__.__name__
        self.file_id = file_id
        self.session_id = session_id
        self.chunk_index = chunk_index
        super().__init__(self._format())

    def _format(self) -> str:
        where = []
        if self.session_id is not None:
            where.append(f"session={self.session_id}")
        if self.file_id is not None:
            where.append(f"file={self.file_id}")
        if self.chunk_index is not None:
            where.append(f"chunk={self.chunk_index}")
        if not where:
            return self.message
        return f"{self.message} ({', '.join(where)})"

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "error": self.code}
        if self.file_id is not None:
            body["file_id"] = self.file_id
        if self.session_id is not None:
            body["session_id"] = self.session_id
        if self.chunk_index is not None:
            body["chunk_index"] = self.chunk_index
        return body


class ConfigError(DriveError):
    code = "config_error"


# ------------------------------------------------------------------
# Remote platform failures
# ------------------------------------------------------------------
class RemoteError(DriveError):
    http_status = 502
    code = "remote_error"


class TransientNetworkError(RemoteError):
    http_status = 503
    code = "transient_network_error"


class RateLimited(TransientNetworkError):
    code = "rate_limited"

    def __init__(self, message: str = "", *, retry_after: float = 1.0, **kwargs):
        self.retry_after = max(0.0, float(retry_after or 0.0))
        super().__init__(message or f"rate limited, retry after {self.retry_after:.1f}s", **kwargs)


class PermanentRejection(RemoteError):
    code = "permanent_rejection"


class NotFound(RemoteError):
    http_status = 404
    code = "remote_not_found"


# ------------------------------------------------------------------
# Client protocol violations
# ------------------------------------------------------------------
class ProtocolError(DriveError):
    http_status = 409
    code = "protocol_error"


class InvalidRequest(ProtocolError):
    http_status = 400
    code = "invalid_request"


class OutOfOrder(ProtocolError):
    code = "out_of_order"

    def __init__(self, message: str = "", *, expected: Optional[int] = None, **kwargs):
        self.expected = expected
        super().__init__(message, **kwargs)

    def to_dict(self):
        body = super().to_dict()
        body["expected_index"] = self.expected
        return body


class Incomplete(ProtocolError):
    code = "incomplete"


class ChecksumMismatch(ProtocolError):
    http_status = 422
    code = "checksum_mismatch"


class SizeExceeded(ProtocolError):
    http_status = 413
    code = "size_exceeded"


class ChunkTooLarge(ProtocolError):
    http_status = 413
    code = "chunk_too_large"


# ------------------------------------------------------------------
# Download / integrity
# ------------------------------------------------------------------
class IntegrityError(DriveError):
    http_status = 502
    code = "integrity_error"


class PartUnavailable(DriveError):
    http_status = 502
    code = "part_unavailable"


# ------------------------------------------------------------------
# Lookups, sessions, folder tree
# ------------------------------------------------------------------
class FileNotFound(DriveError):
    http_status = 404
    code = "file_not_found"


class FolderNotFound(DriveError):
    http_status = 404
    code = "folder_not_found"


class SessionNotFound(DriveError):
    http_status = 404
    code = "session_not_found"


class SessionAborted(DriveError):
    http_status = 410
    code = "session_aborted"


class CycleDetected(DriveError):
    http_status = 409
    code = "cycle_detected"


class NotEmpty(DriveError):
    http_status = 409
    code = "not_empty"
