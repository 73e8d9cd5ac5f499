import asyncio

import pytest

from conftest import sample_bytes
from discord_drive import codec
from discord_drive.errors import FileNotFound, IntegrityError, PartUnavailable, TransientNetworkError
from discord_drive.models import PRIMARY, ChunkRef, FileRecord, FileStatus, RemoteRef


async def test_failover_to_backup_replica(dual_drive, primary, backup):
    data = sample_bytes(80)
    file_id = await dual_drive.upload("video.mp4", data)
    record = await dual_drive.registry.get_file(file_id)
    del primary.messages[record.chunks[2].remote.message_id]

    assert await dual_drive.download(file_id) == data
    assert backup.fetch_calls == [record.replica_for(2).remote.message_id]


async def test_failover_after_retries_exhausted(dual_drive, primary, backup):
    data = sample_bytes(40)
    file_id = await dual_drive.upload("a.bin", data)
    record = await dual_drive.registry.get_file(file_id)
    flaky = record.chunks[0].remote.message_id
    primary.fetch_errors[flaky] = TransientNetworkError("timeout")

    assert await dual_drive.download(file_id) == data
    assert primary.fetch_calls.count(flaky) == 2
    assert backup.fetch_calls == [record.replica_for(0).remote.message_id]


async def test_missing_chunk_without_replica(drive, primary):
    file_id = await drive.upload("a.bin", sample_bytes(48))
    record = await drive.registry.get_file(file_id)
    del primary.messages[record.chunks[1].remote.message_id]

    stream = await drive.downloads.open(file_id)
    with pytest.raises(PartUnavailable) as info:
        await stream.read()
    assert info.value.chunk_index == 1
    assert info.value.file_id == file_id


async def test_corrupt_chunk_is_terminal(dual_drive, primary, backup):
    file_id = await dual_drive.upload("a.bin", sample_bytes(48))
    record = await dual_drive.registry.get_file(file_id)
    primary.messages[record.chunks[1].remote.message_id] = codec.pack(1, b"tampered bytes!!")

    stream = await dual_drive.downloads.open(file_id)
    with pytest.raises(IntegrityError) as info:
        await stream.read()
    assert info.value.chunk_index == 1
    assert backup.fetch_calls == []


async def test_reassembled_file_is_checked_against_record(drive, primary, registry):
    payload = b"abc"
    primary.messages[1] = codec.pack(0, payload)
    await registry.add_file(FileRecord(
        id=77, name="bad.txt", size=3, checksum="0" * 64, status=FileStatus.COMPLETE,
        chunks=[ChunkRef(0, RemoteRef(PRIMARY, 1, "c"), 3, codec.checksum(payload))],
    ))
    stream = await drive.downloads.open(77)
    with pytest.raises(IntegrityError):
        await stream.read()


async def test_pending_and_unknown_files_are_not_downloadable(drive):
    sid = await drive.sessions.start("a.bin")
    await drive.sessions.submit_chunk(sid, 0, b"x")
    file_id = (await drive.sessions.status(sid))["file_id"]
    with pytest.raises(FileNotFound):
        await drive.downloads.open(file_id)
    with pytest.raises(FileNotFound):
        await drive.downloads.open(123456)


async def test_read_ahead_is_bounded(drive, primary):
    data = sample_bytes(160)
    file_id = await drive.upload("a.bin", data)
    primary.fetch_delay = 0.005

    assert await drive.download(file_id) == data
    # read_ahead=2 -> the chunk being consumed plus two prefetched
    assert 2 <= primary.max_active_fetches <= 3


async def test_output_is_sliced_to_stream_buffer(drive):
    data = sample_bytes(50)
    file_id = await drive.upload("a.bin", data)
    stream = await drive.downloads.open(file_id)
    pieces = [piece async for piece in stream]
    assert all(0 < len(p) <= 8 for p in pieces)
    assert b"".join(pieces) == data


async def test_stopping_early_discards_prefetches(drive, primary):
    file_id = await drive.upload("a.bin", sample_bytes(160))
    primary.fetch_delay = 0.005
    stream = await drive.downloads.open(file_id)
    first = await stream.__anext__()
    assert len(first) == 8
    await stream.aclose()
    await asyncio.sleep(0.05)

    assert len(primary.fetch_calls) <= 4
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


async def test_legacy_record_with_raw_payloads(drive, primary, registry):
    primary.messages[11] = b"first-"
    primary.messages[12] = b"second"
    await registry.add_file(FileRecord.from_dict({
        "id": 1711111111000,
        "filename": "legacy.txt",
        "channel_id": "555",
        "status": "done",
        "parts_info": [],
        "message_ids": [11, 12],
    }))
    assert await drive.download(1711111111000) == b"first-second"
