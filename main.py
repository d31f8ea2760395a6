import logging
import os

import discord
from discord.ext import commands

import shared

log = logging.getLogger("walletbot")

intents = discord.Intents.default()
intents.members = True
intents.guilds = True

bot = commands.Bot(command_prefix="!", intents=intents)
GUILD_ID = shared.GUILD_ID

EXTS = [
    "cogs.wallets",
    "cogs.reconcile",
]

@bot.event
async def on_ready():
    guild = bot.get_guild(GUILD_ID) if GUILD_ID else None
    guildname = guild.name if guild else f"id:{GUILD_ID}"
    log.info("Logged in as %s for Guild #%s/%s", bot.user, GUILD_ID, guildname)

async def setup_extensions():
    for ext in EXTS:
        await bot.load_extension(ext)

@bot.event
async def setup_hook():
    # Load cogs before syncing commands
    await setup_extensions()
    try:
        if GUILD_ID:
            # Guild sync shows up immediately
            guild = discord.Object(GUILD_ID)
            bot.tree.copy_global_to(guild=guild)
            await bot.tree.sync(guild=guild)
            log.info("Guild commands registered.")
        else:
            await bot.tree.sync()
            log.info("Global commands registered (may take up to 1 hour to appear).")
    except discord.HTTPException:
        log.exception("Command sync failed")

if __name__ == "__main__":
    token = os.getenv("DISCORD_BOT_TOKEN") or os.getenv("DISCORD_TOKEN")
    if not token:
        raise RuntimeError("DISCORD_BOT_TOKEN is required in environment or .env")
    shared.check_config()
    discord.utils.setup_logging(level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))
    bot.run(token, log_handler=None)
