import asyncio
import dataclasses
import io
import itertools
from typing import Dict, List, Optional

import pytest

from discord_drive import errors
from discord_drive.config import Config
from discord_drive.context import DriveContext
from discord_drive.download import DownloadEngine
from discord_drive.folders import FolderTree
from discord_drive.models import BACKUP, PRIMARY, RemoteRef
from discord_drive.registry import PartRegistry
from discord_drive.senders import PlatformSender
from discord_drive.sessions import UploadSessionManager


class FakeSender(PlatformSender):
    """In-memory platform with hooks for injecting failures and delays."""

    def __init__(self, platform: str = PRIMARY):
        self.platform = platform
        self.messages: Dict[int, bytes] = {}
        self.channels: List[str] = []
        self.released: List[str] = []
        self.deleted: List[int] = []
        self.send_calls: List[int] = []
        self.fetch_calls: List[int] = []
        # index -> errors raised by successive send attempts for that chunk
        self.send_errors: Dict[int, List[Exception]] = {}
        # message id -> error raised by every fetch of that message
        self.fetch_errors: Dict[int, Exception] = {}
        self.send_gates: Dict[int, asyncio.Event] = {}
        # channel name -> event that must be set before provisioning returns
        self.provision_gates: Dict[str, asyncio.Event] = {}
        self.fail_sends: Optional[Exception] = None
        self.fail_deletes = False
        self.unhealthy = False
        self.fetch_delay = 0.0
        self.active_fetches = 0
        self.max_active_fetches = 0
        self._ids = itertools.count(1000)

    async def send(self, channel, index, payload, filename, caption=""):
        self.send_calls.append(index)
        gate = self.send_gates.get(index)
        if gate is not None:
            await gate.wait()
        queued = self.send_errors.get(index)
        if queued:
            raise queued.pop(0)
        if self.fail_sends is not None:
            raise self.fail_sends
        message_id = next(self._ids)
        self.messages[message_id] = payload
        file_id = f"tg-{message_id}" if self.platform == BACKUP else None
        return RemoteRef(self.platform, message_id, channel, file_id=file_id)

    async def fetch(self, ref):
        self.fetch_calls.append(ref.message_id)
        self.active_fetches += 1
        self.max_active_fetches = max(self.max_active_fetches, self.active_fetches)
        try:
            await asyncio.sleep(self.fetch_delay)
            error = self.fetch_errors.get(ref.message_id)
            if error is not None:
                raise error
            if ref.message_id not in self.messages:
                raise errors.NotFound(f"{self.platform} message {ref.message_id} is gone")
            return self.messages[ref.message_id]
        finally:
            self.active_fetches -= 1

    async def _delete(self, ref):
        if self.fail_deletes:
            raise errors.PermanentRejection("delete refused")
        self.messages.pop(ref.message_id, None)
        self.deleted.append(ref.message_id)

    async def provision_channel(self, name):
        gate = self.provision_gates.get(name)
        if gate is not None:
            await gate.wait()
        self.channels.append(name)
        return f"{self.platform}-{len(self.channels)}"

    async def _release_channel(self, channel):
        self.released.append(channel)

    async def health_check(self):
        if self.unhealthy:
            raise errors.TransientNetworkError(f"{self.platform} is down")


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class Drive:
    """All drive components wired over one context, as main.py does."""

    def __init__(self, ctx: DriveContext):
        self.ctx = ctx
        self.registry = ctx.registry
        self.folders = FolderTree(ctx)
        self.downloads = DownloadEngine(ctx)
        self.sessions = UploadSessionManager(ctx, self.folders, self.downloads)

    async def upload(self, name: str, data: bytes, folder_id=None, checksum=None) -> int:
        return await self.sessions.upload_stream(name, folder_id, io.BytesIO(data), expected_checksum=checksum)

    async def download(self, file_id) -> bytes:
        stream = await self.downloads.open(file_id)
        return await stream.read()


@pytest.fixture
def config(tmp_path):
    return Config(
        chunk_size=16,
        upload_concurrency=4,
        send_retries=2,
        retry_backoff=0.0,
        fetch_retries=2,
        read_ahead=2,
        stream_buffer=8,
        session_ttl=60.0,
        data_dir=tmp_path,
    )


@pytest.fixture
def primary():
    return FakeSender(PRIMARY)


@pytest.fixture
def backup():
    return FakeSender(BACKUP)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def registry(tmp_path):
    reg = PartRegistry(tmp_path)
    await reg.load()
    return reg


@pytest.fixture
def make_ctx(config, registry, primary, clock):
    def factory(backup=None, **overrides):
        cfg = dataclasses.replace(config, **overrides)
        return DriveContext.build(cfg, registry, primary, backup, clock=clock)
    return factory


@pytest.fixture
def ctx(make_ctx):
    return make_ctx()


@pytest.fixture
def dual_ctx(make_ctx, backup):
    return make_ctx(backup)


@pytest.fixture
async def drive(ctx):
    d = Drive(ctx)
    yield d
    await d.sessions.close()


@pytest.fixture
async def dual_drive(dual_ctx):
    d = Drive(dual_ctx)
    yield d
    await d.sessions.close()


def sample_bytes(size: int) -> bytes:
    pattern = bytes(range(251))
    return (pattern * (size // len(pattern) + 1))[:size]
