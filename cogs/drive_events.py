import discord
from discord.ext import commands

from discord_drive.log import logger as log


class DriveEvents(commands.Cog):
    """Keeps the registry in step with changes made directly in the guild."""

    def __init__(self, bot):
        self.bot = bot

    @commands.Cog.listener()
    async def on_guild_channel_delete(self, channel: discord.abc.GuildChannel):
        drive = getattr(self.bot, "drive", None)
        if drive is None:
            return
        guild_id = getattr(drive.primary, "guild_id", None)
        if guild_id is not None and channel.guild.id != guild_id:
            return
        removed = await drive.registry.forget_channel(channel.id)
        log.info(f"Channel #{channel.name} ({channel.id}) was deleted, {removed} file(s) pruned from history")


async def setup(bot):
    await bot.add_cog(DriveEvents(bot))
