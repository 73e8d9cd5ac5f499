import asyncio
import io
import json
import re
import string
from typing import Optional

import aiohttp
import discord

from . import errors
from .log import logger as log
from .models import BACKUP, PRIMARY, RemoteRef

TELEGRAM_API = "https://api.telegram.org"


def sanitize_channel_name(name: str) -> str:
    allowed = string.ascii_lowercase + string.digits + '-_'
    sanitized = ''.join(c if c in allowed else '-' for c in (name or "").strip().lower())
    sanitized = re.sub(r'-+', '-', sanitized).strip('-')
    return sanitized[:100] or "drive"


class PlatformSender:
    """One remote destination able to store, return and forget chunk payloads.

    ``send`` and ``fetch`` raise the typed errors from :mod:`errors`
    (RateLimited, TransientNetworkError, PermanentRejection, NotFound);
    ``delete`` and ``release_channel`` are best-effort and never raise.
    """

    platform = "base"

    async def send(self, channel: str, index: int, payload: bytes, filename: str, caption: str = "") -> RemoteRef:
        raise NotImplementedError

    async def fetch(self, ref: RemoteRef) -> bytes:
        raise NotImplementedError

    async def provision_channel(self, name: str) -> str:
        raise NotImplementedError

    async def health_check(self):
        pass

    async def close(self):
        pass

    async def _delete(self, ref: RemoteRef):
        raise NotImplementedError

    async def _release_channel(self, channel: str):
        pass

    async def delete(self, ref: RemoteRef) -> bool:
        try:
            await self._delete(ref)
            return True
        except Exception as e:
            log.warning(f"Best-effort delete of {self.platform} message {ref.message_id} failed: {e}")
            return False

    async def release_channel(self, channel: str) -> bool:
        try:
            await self._release_channel(channel)
            return True
        except Exception as e:
            log.warning(f"Best-effort release of {self.platform} channel {channel} failed: {e}")
            return False


# ------------------------------------------------------------------
# Discord (primary)
# ------------------------------------------------------------------
NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


def translate_discord_error(exc: BaseException, **context) -> errors.DriveError:
    if isinstance(exc, discord.RateLimited):
        return errors.RateLimited(retry_after=exc.retry_after, **context)
    if isinstance(exc, discord.NotFound):
        return errors.NotFound(f"discord: {exc}", **context)
    if isinstance(exc, discord.Forbidden):
        return errors.PermanentRejection(f"discord refused: {exc}", **context)
    if isinstance(exc, discord.DiscordServerError):
        return errors.TransientNetworkError(f"discord server error: {exc}", **context)
    if isinstance(exc, discord.HTTPException):
        if exc.status == 429:
            headers = getattr(exc.response, "headers", None) or {}
            return errors.RateLimited(retry_after=float(headers.get("Retry-After", 1.0)), **context)
        if exc.status >= 500:
            return errors.TransientNetworkError(f"discord server error: {exc}", **context)
        return errors.PermanentRejection(f"discord rejected request: {exc}", **context)
    if isinstance(exc, (discord.ConnectionClosed, discord.GatewayNotFound) + NETWORK_ERRORS):
        return errors.TransientNetworkError(f"discord unreachable: {exc}", **context)
    return errors.PermanentRejection(f"discord: {exc}", **context)


class DiscordSender(PlatformSender):
    platform = PRIMARY

    def __init__(self, client: discord.Client, guild_id: int, category_name: Optional[str] = None):
        self.client = client
        self.guild_id = int(guild_id)
        self.category_name = category_name
        self._category_id: Optional[int] = None

    async def _channel(self, channel_id):
        if channel_id is None:
            raise errors.NotFound("no discord channel recorded")
        channel = self.client.get_channel(int(channel_id))
        if channel is None:
            channel = await self.client.fetch_channel(int(channel_id))
        if not isinstance(channel, discord.abc.Messageable):
            raise errors.PermanentRejection(f"discord channel {channel_id} cannot hold messages")
        return channel

    async def _guild(self):
        guild = self.client.get_guild(self.guild_id)
        if guild is None:
            guild = await self.client.fetch_guild(self.guild_id)
        return guild

    async def _category(self, guild):
        if not self.category_name:
            return None
        if self._category_id is not None:
            cached = guild.get_channel(self._category_id)
            if cached is not None:
                return cached
        wanted = sanitize_channel_name(self.category_name)
        for channel in await guild.fetch_channels():
            if isinstance(channel, discord.CategoryChannel) and channel.name.lower() in (wanted, self.category_name.lower()):
                self._category_id = channel.id
                return channel
        category = await guild.create_category(self.category_name)
        log.info(f"Created category: {self.category_name}")
        self._category_id = category.id
        return category

    async def send(self, channel, index, payload, filename, caption=""):
        try:
            target = await self._channel(channel)
            message = await target.send(caption or None, file=discord.File(io.BytesIO(payload), filename=filename))
        except errors.DriveError:
            raise
        except (discord.DiscordException,) + NETWORK_ERRORS as e:
            raise translate_discord_error(e, chunk_index=index) from e
        return RemoteRef(self.platform, message.id, str(message.channel.id), jump_url=message.jump_url)

    async def fetch(self, ref):
        try:
            target = await self._channel(ref.channel_id)
            message = await target.fetch_message(ref.message_id)
            if not message.attachments:
                raise errors.NotFound(f"discord message {ref.message_id} has no attachment")
            return await message.attachments[0].read()
        except errors.PermanentRejection as e:
            raise errors.NotFound(e.message) from e
        except errors.DriveError:
            raise
        except (discord.DiscordException,) + NETWORK_ERRORS as e:
            translated = translate_discord_error(e)
            if isinstance(translated, errors.PermanentRejection):
                raise errors.NotFound(translated.message) from e
            raise translated from e

    async def _delete(self, ref):
        target = await self._channel(ref.channel_id)
        await target.get_partial_message(ref.message_id).delete()

    async def provision_channel(self, name):
        try:
            guild = await self._guild()
            category = await self._category(guild)
            channel = await guild.create_text_channel(name=sanitize_channel_name(name), category=category)
        except (discord.DiscordException,) + NETWORK_ERRORS as e:
            raise translate_discord_error(e) from e
        log.info(f"Created channel #{channel.name} ({channel.id})")
        return str(channel.id)

    async def _release_channel(self, channel):
        target = await self._channel(channel)
        await target.delete(reason="Discord Drive folder removed")

    async def health_check(self):
        try:
            await self._guild()
        except (discord.DiscordException,) + NETWORK_ERRORS as e:
            raise translate_discord_error(e) from e


# ------------------------------------------------------------------
# Telegram (backup)
# ------------------------------------------------------------------
NOT_FOUND_HINTS = ("not found", "wrong file_id", "invalid file_id", "file is temporarily unavailable")


class TelegramSender(PlatformSender):
    platform = BACKUP

    def __init__(self, token: str, chat_id: str, api_base: str = TELEGRAM_API, timeout: float = 600.0):
        self.token = token
        self.chat_id = str(chat_id)
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def _call(self, method: str, data=None, params=None, chunk_index=None):
        url = f"{self.api_base}/bot{self.token}/{method}"
        try:
            async with self._http().post(url, data=data, params=params) as resp:
                status = resp.status
                try:
                    body = await resp.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError):
                    body = None
        except NETWORK_ERRORS as e:
            raise errors.TransientNetworkError(f"telegram {method}: {e}", chunk_index=chunk_index) from e
        if not isinstance(body, dict):
            body = {}
        if body.get("ok"):
            return body.get("result") or {}
        description = body.get("description") or f"HTTP {status}"
        code = body.get("error_code") or status
        if code == 429:
            retry_after = (body.get("parameters") or {}).get("retry_after", 1)
            raise errors.RateLimited(retry_after=retry_after, chunk_index=chunk_index)
        if code >= 500:
            raise errors.TransientNetworkError(f"telegram {method}: {description}", chunk_index=chunk_index)
        if any(hint in description.lower() for hint in NOT_FOUND_HINTS):
            raise errors.NotFound(f"telegram {method}: {description}", chunk_index=chunk_index)
        raise errors.PermanentRejection(f"telegram {method}: {description}", chunk_index=chunk_index)

    async def send(self, channel, index, payload, filename, caption=""):
        form = aiohttp.FormData()
        form.add_field("chat_id", str(channel or self.chat_id))
        if caption:
            form.add_field("caption", caption)
        form.add_field("document", payload, filename=filename, content_type="application/octet-stream")
        result = await self._call("sendDocument", data=form, chunk_index=index)
        document = result.get("document") or {}
        if not document.get("file_id"):
            raise errors.PermanentRejection("telegram accepted the message without a document", chunk_index=index)
        chat = (result.get("chat") or {}).get("id", channel or self.chat_id)
        return RemoteRef(self.platform, int(result["message_id"]), str(chat), file_id=document["file_id"])

    async def fetch(self, ref):
        if not ref.file_id:
            raise errors.NotFound(f"telegram message {ref.message_id} has no file id")
        try:
            result = await self._call("getFile", params={"file_id": ref.file_id})
        except errors.PermanentRejection as e:
            raise errors.NotFound(e.message) from e
        file_path = result.get("file_path")
        if not file_path:
            raise errors.NotFound(f"telegram has no file path for {ref.file_id}")
        url = f"{self.api_base}/file/bot{self.token}/{file_path}"
        try:
            async with self._http().get(url) as resp:
                if resp.status >= 500:
                    raise errors.TransientNetworkError(f"telegram file download: HTTP {resp.status}")
                if resp.status != 200:
                    raise errors.NotFound(f"telegram file download: HTTP {resp.status}")
                data = await resp.read()
        except NETWORK_ERRORS as e:
            raise errors.TransientNetworkError(f"telegram file download: {e}") from e
        if not data:
            raise errors.TransientNetworkError("empty response from Telegram CDN")
        return data

    async def _delete(self, ref):
        await self._call("deleteMessage", data={"chat_id": ref.channel_id or self.chat_id,
                                                "message_id": str(ref.message_id)})

    async def provision_channel(self, name):
        return self.chat_id

    async def health_check(self):
        await self._call("getMe")

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
