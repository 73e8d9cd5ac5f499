"""
Chunk codec: fixed-size splitting, ordered merging and the on-wire chunk envelope.

Envelope layout: MAGIC (4) + VER (1) + JSON_LEN (4 big-endian) + JSON + payload
JSON example: {"t":"part","pi":0,"h":"<sha256 of payload>","enc":false}
The header is built before encryption, so encrypted chunks are decrypted first
and parsed afterwards.
"""
import base64
import hashlib
import io
import json
import zipfile
from typing import AsyncIterator, Iterable, Iterator, NamedTuple, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import IntegrityError

CHUNK_HEADER_MAGIC = b"DDCH"           # Discord Drive CHunk
CHUNK_HEADER_VERSION = 1
HEADER_PREFIX_LEN = 9
ZIP_MAGIC = b"PK\x03\x04"

ENCRYPTION_SALT = b'discord_drive_chunk_salt'


class Chunk(NamedTuple):
    index: int
    data: bytes
    checksum: str


def checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ------------------------------------------------------------------
# Split / merge
# ------------------------------------------------------------------
def split(stream, chunk_size: int) -> Iterator[Chunk]:
    """Yield fixed-size chunks from a binary file-like object.

    Short reads are coalesced, so every chunk but the last is exactly
    ``chunk_size`` bytes. The iterator consumes the stream and cannot be
    restarted; re-open the source to retry.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    index = 0
    while True:
        buf = bytearray()
        while len(buf) < chunk_size:
            piece = stream.read(chunk_size - len(buf))
            if not piece:
                break
            buf.extend(piece)
        if not buf:
            return
        data = bytes(buf)
        yield Chunk(index, data, checksum(data))
        index += 1
        if len(buf) < chunk_size:
            return


async def asplit(stream, chunk_size: int) -> AsyncIterator[Chunk]:
    """Async twin of :func:`split` for objects exposing ``await read(n)``."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    index = 0
    while True:
        buf = bytearray()
        while len(buf) < chunk_size:
            piece = await stream.read(chunk_size - len(buf))
            if not piece:
                break
            buf.extend(piece)
        if not buf:
            return
        data = bytes(buf)
        yield Chunk(index, data, checksum(data))
        index += 1
        if len(buf) < chunk_size:
            return


def merge(chunks: Iterable[Tuple[int, bytes, Optional[str]]]) -> Iterator[bytes]:
    expected = 0
    for index, data, digest in chunks:
        if index != expected:
            raise IntegrityError(f"chunk gap: expected index {expected}, got {index}", chunk_index=expected)
        if digest and checksum(data) != digest:
            raise IntegrityError("chunk checksum mismatch", chunk_index=index)
        yield data
        expected += 1


def chunk_count(total_size: int, chunk_size: int) -> int:
    return (total_size + chunk_size - 1) // chunk_size


# ------------------------------------------------------------------
# Encryption
# ------------------------------------------------------------------
def build_cipher(passphrase: str) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=ENCRYPTION_SALT,
        iterations=100000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))
    return Fernet(key)


# ------------------------------------------------------------------
# Envelope
# ------------------------------------------------------------------
def build_chunk_header(meta: dict) -> bytes:
    payload = json.dumps(meta, separators=(',', ':')).encode('utf-8')
    return CHUNK_HEADER_MAGIC + bytes([CHUNK_HEADER_VERSION]) + len(payload).to_bytes(4, 'big') + payload


def parse_chunk_header(raw: bytes) -> Tuple[Optional[dict], int]:
    if len(raw) < HEADER_PREFIX_LEN or raw[0:4] != CHUNK_HEADER_MAGIC:
        return None, 0
    if raw[4] != CHUNK_HEADER_VERSION:
        return None, 0
    json_len = int.from_bytes(raw[5:9], 'big')
    end = HEADER_PREFIX_LEN + json_len
    if end > len(raw):
        return None, 0
    try:
        meta = json.loads(raw[HEADER_PREFIX_LEN:end].decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None, 0
    if not isinstance(meta, dict):
        return None, 0
    return meta, end


def pack(index: int, data: bytes, cipher: Optional[Fernet] = None) -> bytes:
    header = build_chunk_header({
        "t": "part",
        "pi": index,
        "h": checksum(data),
        "enc": cipher is not None,
    })
    envelope = header + data
    if cipher is not None:
        return cipher.encrypt(envelope)
    return envelope


def _unzip_single(raw: bytes) -> bytes:
    with zipfile.ZipFile(io.BytesIO(raw)) as archive:
        names = archive.namelist()
        if not names:
            return b""
        return archive.read(names[0])


def unpack(raw: bytes, cipher: Optional[Fernet] = None) -> Tuple[Optional[dict], bytes]:
    """Return ``(header, payload)``; header is None for legacy payloads."""
    if cipher is not None and not raw.startswith(CHUNK_HEADER_MAGIC) and not raw.startswith(ZIP_MAGIC):
        try:
            raw = cipher.decrypt(raw)
        except InvalidToken as e:
            raise IntegrityError("chunk could not be decrypted") from e
    meta, offset = parse_chunk_header(raw)
    if meta is not None:
        return meta, raw[offset:]
    if raw.startswith(ZIP_MAGIC):
        try:
            return None, _unzip_single(raw)
        except zipfile.BadZipFile as e:
            raise IntegrityError("legacy zip part is corrupted") from e
    return None, raw


def open_chunk(raw: bytes, index: int, expected_checksum: Optional[str],
               cipher: Optional[Fernet] = None, file_id=None) -> bytes:
    try:
        meta, payload = unpack(raw, cipher)
    except IntegrityError as e:
        raise IntegrityError(e.message, file_id=file_id, chunk_index=index) from e
    if meta is not None:
        if meta.get("enc") and cipher is None:
            raise IntegrityError("chunk is encrypted but no key is configured", file_id=file_id, chunk_index=index)
        if meta.get("pi") != index:
            raise IntegrityError(f"chunk header index {meta.get('pi')} does not match", file_id=file_id,
                                 chunk_index=index)
        if meta.get("h") and checksum(payload) != meta["h"]:
            raise IntegrityError("chunk payload does not match its header checksum", file_id=file_id,
                                 chunk_index=index)
    if expected_checksum and checksum(payload) != expected_checksum:
        raise IntegrityError("chunk checksum mismatch", file_id=file_id, chunk_index=index)
    return payload


def envelope_size(chunk_size: int, encrypted: bool) -> int:
    # header JSON is bounded: 64 hex digest plus a handful of short keys
    raw = chunk_size + HEADER_PREFIX_LEN + 128
    if not encrypted:
        return raw
    # Fernet: version + timestamp + IV + AES-CBC padded body + HMAC, then urlsafe base64
    token = 1 + 8 + 16 + (raw // 16 + 1) * 16 + 32
    return ((token + 2) // 3) * 4


def max_chunk_size(limit: int, encrypted: bool) -> int:
    lo, hi = 1, limit
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if envelope_size(mid, encrypted) <= limit:
            lo = mid
        else:
            hi = mid - 1
    return lo


def part_filename(file_id, index: int, digest: str, encrypted: bool) -> str:
    return f"dd_{file_id}_{index}_h{digest[:12]}{'e' if encrypted else ''}.chunk"
