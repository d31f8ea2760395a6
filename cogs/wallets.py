# cogs/wallets.py
import logging

import discord
from discord import app_commands
from discord.ext import commands

from roles import NO_ROLES, held_roles_from
from shared import get_wallet_store, priority_roles
from wallet_service import InvalidWalletAddress, WalletService

log = logging.getLogger(__name__)

ERROR_TEXT = "There was an error. Please try again."


def member_label(user: discord.abc.User) -> str:
    disc = getattr(user, "discriminator", "0")
    return f"{user.name}#{disc}" if disc and disc != "0" else user.name


async def _reply_error(interaction: discord.Interaction):
    try:
        if interaction.response.is_done():
            await interaction.followup.send(ERROR_TEXT, ephemeral=True)
        else:
            await interaction.response.send_message(ERROR_TEXT, ephemeral=True)
    except discord.HTTPException:
        log.warning("Could not send error reply for interaction %s", interaction.id)


class WalletModal(discord.ui.Modal, title="Submit your EVM wallet"):
    def __init__(self, service: WalletService):
        super().__init__(custom_id="wallet_modal")
        self.service = service
        self.wallet_in = discord.ui.TextInput(
            label="EVM wallet address (0x...)",
            placeholder="0x...",
            required=True,
            max_length=100,
            custom_id="wallet_address",
        )
        self.add_item(self.wallet_in)

    async def on_submit(self, interaction: discord.Interaction):
        # defer first, the sheet round trip can outlast the 3s window
        await interaction.response.defer(ephemeral=True)
        user = interaction.user
        held = held_roles_from(user) if isinstance(user, discord.Member) else NO_ROLES
        try:
            action = await self.service.submit_or_update(
                str(user.id), member_label(user), self.wallet_in.value, held
            )
        except InvalidWalletAddress:
            await interaction.followup.send(
                "Invalid EVM address. Please submit a 0x... address.", ephemeral=True
            )
            return
        await interaction.followup.send(
            f"Wallet {'updated' if action == 'updated' else 'saved'} successfully.", ephemeral=True
        )

    async def on_error(self, interaction: discord.Interaction, error: Exception):
        log.exception("Wallet submission failed for %s", interaction.user.id, exc_info=error)
        await _reply_error(interaction)


class WalletPanelView(discord.ui.View):
    """Submit / Check Status buttons. Persistent, re-registered on startup."""

    def __init__(self, service: WalletService):
        super().__init__(timeout=None)
        self.service = service

    @discord.ui.button(label="Submit Wallet", style=discord.ButtonStyle.success, custom_id="submit_wallet")
    async def submit(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.send_modal(WalletModal(self.service))

    @discord.ui.button(label="Check Status", style=discord.ButtonStyle.primary, custom_id="check_status")
    async def status(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.defer(ephemeral=True)
        record = await self.service.lookup(str(interaction.user.id))
        if not record:
            await interaction.followup.send("You have not submitted a wallet yet.", ephemeral=True)
            return
        embed = discord.Embed(title="Wallet Submission", color=0x2ECC71)
        embed.add_field(name="Discord Username", value=record.display_name or "Unknown", inline=True)
        embed.add_field(name="Discord ID", value=record.member_id, inline=True)
        embed.add_field(name="EVM Wallet", value=record.wallet_address or "N/A", inline=False)
        embed.add_field(name="Role", value=record.role_label or "N/A", inline=True)
        await interaction.followup.send(embed=embed, ephemeral=True)

    async def on_error(self, interaction: discord.Interaction, error: Exception, item: discord.ui.Item):
        log.exception("Wallet panel %s failed for %s", getattr(item, "custom_id", "?"),
                      interaction.user.id, exc_info=error)
        await _reply_error(interaction)


class Wallets(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.service = WalletService(get_wallet_store(), priority_roles())

    async def cog_load(self):
        self.bot.add_view(WalletPanelView(self.service))
        # warm up: creates the tab and header if needed
        try:
            await self.service.store.ensure_schema()
        except Exception:
            log.exception("Sheets warm-up failed")

    @app_commands.command(name="submit_wallet_setup", description="Post the wallet submission message in this channel")
    @app_commands.default_permissions(manage_guild=True)
    async def submit_wallet_setup(self, interaction: discord.Interaction):
        embed = discord.Embed(description="Submit your wallet", color=0x2B2D31)
        await interaction.response.send_message(
            embed=embed,
            view=WalletPanelView(self.service),
            allowed_mentions=discord.AllowedMentions.none(),
        )


async def setup(bot: commands.Bot):
    await bot.add_cog(Wallets(bot))
