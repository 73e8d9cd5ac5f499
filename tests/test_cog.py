from types import SimpleNamespace

from cogs.drive_events import DriveEvents
from discord_drive.models import FileRecord, FolderRecord


def channel(channel_id, guild_id=1):
    return SimpleNamespace(id=channel_id, name="docs", guild=SimpleNamespace(id=guild_id))


async def test_deleted_channel_prunes_history(registry, primary):
    ref = await registry.add_folder(FolderRecord(id=5, name="Docs", channel_id="42"))
    await registry.add_file(FileRecord.from_dict({"id": 6, "filename": "a", "channel_id": "42", "message_ids": [1]}))
    primary.guild_id = 1
    bot = SimpleNamespace(drive=SimpleNamespace(primary=primary, registry=registry))

    await DriveEvents(bot).on_guild_channel_delete(channel(42))

    assert await registry.files(include_pending=True) == []
    assert (await registry.get_folder(ref.id)).channel_id is None


async def test_other_guilds_are_ignored(registry, primary):
    await registry.add_file(FileRecord.from_dict({"id": 6, "filename": "a", "channel_id": "42", "message_ids": [1]}))
    primary.guild_id = 1
    bot = SimpleNamespace(drive=SimpleNamespace(primary=primary, registry=registry))

    await DriveEvents(bot).on_guild_channel_delete(channel(42, guild_id=2))
    assert len(await registry.files(include_pending=True)) == 1


async def test_listener_before_drive_is_ready():
    await DriveEvents(SimpleNamespace()).on_guild_channel_delete(channel(42))
