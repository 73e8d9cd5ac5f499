import io
import zipfile

import pytest

from conftest import sample_bytes
from discord_drive import codec
from discord_drive.errors import IntegrityError


class TrickleStream:
    """Returns at most ``step`` bytes per read, like a slow socket."""

    def __init__(self, data: bytes, step: int):
        self.buf = io.BytesIO(data)
        self.step = step

    def read(self, n):
        return self.buf.read(min(n, self.step))


class AsyncStream:
    def __init__(self, data: bytes, step: int = 5):
        self.inner = TrickleStream(data, step)

    async def read(self, n):
        return self.inner.read(n)


def test_split_twenty_million_bytes_into_three_chunks():
    data = sample_bytes(20_000_000)
    chunks = list(codec.split(io.BytesIO(data), 8_000_000))
    assert [len(c.data) for c in chunks] == [8_000_000, 8_000_000, 4_000_000]
    assert [c.index for c in chunks] == [0, 1, 2]
    assert b"".join(codec.merge(chunks)) == data


def test_split_exact_multiple_has_no_empty_tail():
    chunks = list(codec.split(io.BytesIO(b"x" * 32), 16))
    assert [len(c.data) for c in chunks] == [16, 16]


def test_split_empty_stream_yields_nothing():
    assert list(codec.split(io.BytesIO(b""), 16)) == []


def test_split_coalesces_short_reads():
    data = sample_bytes(50)
    chunks = list(codec.split(TrickleStream(data, 3), 16))
    assert [len(c.data) for c in chunks] == [16, 16, 16, 2]
    assert all(c.checksum == codec.checksum(c.data) for c in chunks)


def test_split_rejects_non_positive_size():
    with pytest.raises(ValueError):
        list(codec.split(io.BytesIO(b"abc"), 0))


async def test_asplit_matches_split():
    data = sample_bytes(70)
    expected = list(codec.split(io.BytesIO(data), 16))
    got = [c async for c in codec.asplit(AsyncStream(data), 16)]
    assert got == expected


def test_merge_detects_gap():
    chunks = list(codec.split(io.BytesIO(sample_bytes(48)), 16))
    with pytest.raises(IntegrityError) as info:
        list(codec.merge([chunks[0], chunks[2]]))
    assert info.value.chunk_index == 1


def test_merge_detects_corruption():
    chunk = next(codec.split(io.BytesIO(b"a" * 16), 16))
    with pytest.raises(IntegrityError):
        list(codec.merge([(0, b"b" * 16, chunk.checksum)]))


def test_chunk_count():
    assert codec.chunk_count(0, 8) == 0
    assert codec.chunk_count(8, 8) == 1
    assert codec.chunk_count(9, 8) == 2


def test_pack_unpack_plain():
    raw = codec.pack(3, b"payload")
    assert raw.startswith(codec.CHUNK_HEADER_MAGIC)
    meta, payload = codec.unpack(raw)
    assert payload == b"payload"
    assert meta == {"t": "part", "pi": 3, "h": codec.checksum(b"payload"), "enc": False}


def test_pack_unpack_encrypted():
    cipher = codec.build_cipher("correct horse")
    raw = codec.pack(0, b"secret bytes", cipher)
    assert b"secret bytes" not in raw
    assert codec.open_chunk(raw, 0, codec.checksum(b"secret bytes"), cipher) == b"secret bytes"


def test_wrong_key_is_an_integrity_error():
    raw = codec.pack(0, b"secret", codec.build_cipher("one"))
    with pytest.raises(IntegrityError):
        codec.open_chunk(raw, 0, None, codec.build_cipher("two"), file_id=7)


def test_open_chunk_checks_header_index():
    raw = codec.pack(1, b"data")
    with pytest.raises(IntegrityError) as info:
        codec.open_chunk(raw, 2, None, file_id=9)
    assert info.value.file_id == 9
    assert info.value.chunk_index == 2


def test_open_chunk_checks_recorded_checksum():
    raw = codec.pack(0, b"data")
    with pytest.raises(IntegrityError):
        codec.open_chunk(raw, 0, codec.checksum(b"other"))


def test_open_chunk_checks_header_checksum():
    raw = bytearray(codec.pack(0, b"data"))
    raw[-1] ^= 0xFF
    with pytest.raises(IntegrityError):
        codec.open_chunk(bytes(raw), 0, None)


def test_legacy_raw_payload_passes_through():
    assert codec.open_chunk(b"plain old bytes", 4, None) == b"plain old bytes"


def test_legacy_zip_payload_is_unwrapped():
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        archive.writestr("movie.part1", b"zipped contents")
    assert codec.open_chunk(buf.getvalue(), 0, codec.checksum(b"zipped contents")) == b"zipped contents"


def test_encrypted_header_without_key_is_rejected():
    cipher = codec.build_cipher("k")
    raw = cipher.decrypt(codec.pack(0, b"x", cipher))
    with pytest.raises(IntegrityError):
        codec.open_chunk(raw, 0, None)


def test_parse_chunk_header_rejects_garbage():
    assert codec.parse_chunk_header(b"DDCH\x01\x00\x00\x00\x10{}") == (None, 0)
    assert codec.parse_chunk_header(b"DDCH\x02" + b"\x00" * 8) == (None, 0)
    assert codec.parse_chunk_header(b"short") == (None, 0)


@pytest.mark.parametrize("encrypted", [False, True])
def test_max_chunk_size_fits_limit(encrypted):
    limit = 1024 * 1024
    size = codec.max_chunk_size(limit, encrypted)
    assert codec.envelope_size(size, encrypted) <= limit
    assert codec.envelope_size(size + 1, encrypted) > limit


def test_envelope_size_covers_real_envelope():
    cipher = codec.build_cipher("k")
    data = b"z" * 1000
    assert len(codec.pack(123456, data)) <= codec.envelope_size(len(data), False)
    assert len(codec.pack(123456, data, cipher)) <= codec.envelope_size(len(data), True)


def test_part_filename():
    name = codec.part_filename(42, 3, "ab" * 32, encrypted=True)
    assert name == "dd_42_3_h" + ("ab" * 6) + "e.chunk"
