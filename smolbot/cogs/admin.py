from __future__ import annotations

import discord
from discord import app_commands
from discord.ext import commands

from smolbot.logger_factory import get_logger, set_log_levels

log = get_logger("Cog.Admin")


def _services(bot: commands.Bot):
    services = getattr(bot, "services", None)
    if services is None:
        raise app_commands.CheckFailure("Bot services are not attached yet.")
    return services


async def _admin_check(interaction: discord.Interaction) -> bool:
    services = _services(interaction.client)
    if str(interaction.user.id) in services.config.discord_admin_user_ids():
        return True
    raise app_commands.CheckFailure("Not authorized.")


def status_lines(services) -> list[str]:
    lim = services.limiter.status()
    sch = services.scheduler.status()
    cache = services.cache
    lines = [
        f"Rate limiter: {lim.available_tokens}/{services.limiter.max_tokens} tokens, "
        f"{lim.queue_length} waiting, window resets in {lim.window_remaining_seconds:.0f}s",
        f"Scheduler: {sch.running} running, {sch.queued} queued, {sch.completed} completed, {sch.failed} failed",
        f"Cache: {len(cache.channels())} channels (max {cache.max_size} messages each)",
    ]
    return lines


class AdminCog(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot

    async def cog_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError) -> None:
        msg = "Not authorized." if isinstance(error, app_commands.CheckFailure) else f"Error: {error}"
        if not isinstance(error, app_commands.CheckFailure):
            log.error(f"[admin-command-error] {error!r}")
        if interaction.response.is_done():
            await interaction.followup.send(msg, ephemeral=True)
        else:
            await interaction.response.send_message(msg, ephemeral=True)

    @app_commands.check(_admin_check)
    @app_commands.command(name="smolbot_cache_clear", description="Clear the conversation cache for a channel")
    @app_commands.describe(channel="Channel to clear (defaults to this channel)")
    async def smolbot_cache_clear(self, interaction: discord.Interaction, channel: discord.TextChannel | None = None):
        services = _services(self.bot)
        cid = str(channel.id if channel is not None else interaction.channel_id)
        log.info(f"[Discord] {interaction.user.display_name} used /smolbot_cache_clear channel={cid}")
        existed = services.cache.clear(cid)
        services.handler.forget_channel(cid)
        text = "Cache cleared." if existed else "No cache held for that channel."
        await interaction.response.send_message(text, ephemeral=True)

    @app_commands.check(_admin_check)
    @app_commands.command(name="smolbot_status", description="Show rate limiter, scheduler and cache state")
    async def smolbot_status(self, interaction: discord.Interaction):
        services = _services(self.bot)
        await interaction.response.send_message("\n".join(status_lines(services)), ephemeral=True)

    @app_commands.check(_admin_check)
    @app_commands.command(name="smolbot_reload", description="Reload config.yaml and hot-apply log levels")
    async def smolbot_reload(self, interaction: discord.Interaction):
        services = _services(self.bot)
        cfg = services.config
        set_log_levels(level=cfg.log_level(), lib_log_level=cfg.lib_log_level())
        log.info(f"[Discord] {interaction.user.display_name} used /smolbot_reload level={cfg.log_level()}")
        await interaction.response.send_message("Config reloaded and logging updated.", ephemeral=True)


async def setup(bot: commands.Bot):
    await bot.add_cog(AdminCog(bot))
