import pytest

from discord_drive.errors import CycleDetected, FileNotFound, FolderNotFound, InvalidRequest, NotEmpty


async def tree_snapshot(registry):
    return sorted((f.id, f.parent_id, f.name) for f in await registry.folders())


async def test_create_nested_and_path(drive):
    docs = await drive.folders.create("Docs")
    work = await drive.folders.create("Work", docs.id)
    path = await drive.folders.path(work.id)
    assert [f.name for f in path] == ["Docs", "Work"]
    assert await drive.folders.path(None) == []


async def test_create_rejects_bad_input(drive):
    with pytest.raises(InvalidRequest):
        await drive.folders.create("  ")
    with pytest.raises(InvalidRequest):
        await drive.folders.create("a/b")
    with pytest.raises(FolderNotFound):
        await drive.folders.create("Orphan", 404)


async def test_move_under_descendant_is_rejected(drive, registry):
    a = await drive.folders.create("A")
    b = await drive.folders.create("B", a.id)
    c = await drive.folders.create("C", b.id)
    before = await tree_snapshot(registry)

    with pytest.raises(CycleDetected):
        await drive.folders.move(a.id, c.id)
    with pytest.raises(CycleDetected):
        await drive.folders.move(a.id, a.id)
    assert await tree_snapshot(registry) == before


async def test_move_folder_and_file_is_metadata_only(drive, primary, registry):
    a = await drive.folders.create("A")
    b = await drive.folders.create("B")
    file_id = await drive.upload("f.txt", b"payload", folder_id=a.id)
    sends = list(primary.send_calls)
    messages = dict(primary.messages)

    moved = await drive.folders.move(b.id, a.id)
    assert moved.parent_id == a.id
    record = await drive.folders.move(file_id, b.id)
    assert record.folder_id == b.id
    assert record.folder_name == "B"

    assert primary.send_calls == sends
    assert primary.messages == messages
    assert await drive.download(file_id) == b"payload"

    back = await drive.folders.move(b.id, None)
    assert back.parent_id is None


async def test_move_to_missing_parent(drive):
    a = await drive.folders.create("A")
    with pytest.raises(FolderNotFound):
        await drive.folders.move(a.id, 404)
    with pytest.raises(FileNotFound):
        await drive.folders.move(999, None)


async def test_rename(drive):
    a = await drive.folders.create("A")
    file_id = await drive.upload("old.txt", b"x", folder_id=a.id)
    assert (await drive.folders.rename(a.id, "Renamed")).name == "Renamed"
    assert (await drive.folders.rename(file_id, "new.txt")).name == "new.txt"
    assert (await drive.registry.get_file(file_id)).folder_name == "Renamed"


async def test_delete_non_empty_without_force(drive, primary, registry):
    a = await drive.folders.create("A")
    await drive.folders.create("Sub", a.id)
    file_id = await drive.upload("f.txt", b"data", folder_id=a.id)
    messages = dict(primary.messages)
    before = await tree_snapshot(registry)

    with pytest.raises(NotEmpty):
        await drive.folders.delete(a.id)
    assert await tree_snapshot(registry) == before
    assert primary.messages == messages
    assert (await registry.get_file(file_id)).name == "f.txt"


async def test_forced_delete_cascades(dual_drive, primary, backup, registry):
    a = await dual_drive.folders.create("A")
    sub = await dual_drive.folders.create("Sub", a.id)
    keep = await dual_drive.upload("keep.txt", b"keep me")
    await dual_drive.upload("one.txt", b"x" * 40, folder_id=a.id)
    await dual_drive.upload("two.txt", b"y" * 10, folder_id=sub.id)
    channel = (await registry.get_folder(a.id)).channel_id

    await dual_drive.folders.delete(a.id, force=True)

    assert await registry.folders() == []
    assert [r.id for r in await registry.files(include_pending=True)] == [keep]
    assert len(primary.messages) == 1
    assert len(backup.messages) == 1
    assert channel in primary.released
    assert await dual_drive.download(keep) == b"keep me"


async def test_delete_empty_folder(drive, registry):
    a = await drive.folders.create("A")
    await drive.folders.delete(a.id)
    assert not registry.has_folder(a.id)


async def test_delete_file(drive, primary, registry):
    file_id = await drive.upload("f.txt", b"z" * 40)
    removed = await drive.folders.delete_file(file_id)
    assert removed.id == file_id
    assert primary.messages == {}
    with pytest.raises(FileNotFound):
        await registry.get_file(file_id)


async def test_delete_survives_remote_failures(drive, primary, registry):
    file_id = await drive.upload("f.txt", b"z" * 20)
    primary.fail_deletes = True
    await drive.folders.delete_file(file_id)
    with pytest.raises(FileNotFound):
        await registry.get_file(file_id)


async def test_list_folder_hides_pending_uploads(drive):
    a = await drive.folders.create("A")
    await drive.folders.create("Sub", a.id)
    done = await drive.upload("done.txt", b"ok", folder_id=a.id)
    sid = await drive.sessions.start("partial.txt", folder_id=a.id)
    await drive.sessions.submit_chunk(sid, 0, b"x")

    folders, files = await drive.folders.list_folder(a.id)
    assert [f.name for f in folders] == ["Sub"]
    assert [r.id for r in files] == [done]


async def test_root_channel_is_provisioned_once(drive, primary, registry):
    first = await drive.folders.ensure_channel(None)
    second = await drive.folders.ensure_channel(None)
    assert first == second
    assert primary.channels == ["drive-root"]
    assert registry.get_meta("root_channel_id") == first
