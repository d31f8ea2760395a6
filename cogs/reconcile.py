# cogs/reconcile.py
import logging
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from directory import GuildDirectory
from reconcile import MODES, Reconciler, ReconcileService
from shared import GUILD_ID, LOOKUP_TIMEOUT, export_summary, get_wallet_store, priority_roles

log = logging.getLogger(__name__)

MODE_CHOICES = [
    app_commands.Choice(name=f"{name}: {p.description}"[:100], value=name)
    for name, p in MODES.items()
]


class DirectMessageNotifier:
    """Delivers pass results to the member who started the pass."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    async def notify(self, recipient: int, message: str, attachment: Optional[str] = None) -> None:
        user = self.bot.get_user(recipient) or await self.bot.fetch_user(recipient)
        if attachment:
            await user.send(message, file=discord.File(attachment))
        else:
            await user.send(message)


class Reconcile(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.store = get_wallet_store()
        self.priority = priority_roles()
        self.notifier = DirectMessageNotifier(bot)
        self._service: ReconcileService | None = None

    async def _guild(self, interaction: discord.Interaction) -> discord.Guild:
        if not GUILD_ID:
            return interaction.guild
        return self.bot.get_guild(GUILD_ID) or await self.bot.fetch_guild(GUILD_ID)

    async def _service_for(self, interaction: discord.Interaction) -> ReconcileService:
        if self._service is None:
            guild = await self._guild(interaction)
            reconciler = Reconciler(
                self.store, GuildDirectory(guild), self.priority, lookup_timeout=LOOKUP_TIMEOUT
            )
            self._service = ReconcileService(reconciler, self.notifier, exporter=export_summary)
        return self._service

    async def _start(self, interaction: discord.Interaction, mode: str, *, dry_run: bool, export: bool):
        if not interaction.user.guild_permissions.manage_roles:
            return await interaction.response.send_message(
                "Need Manage Roles permission.", ephemeral=True
            )
        service = await self._service_for(interaction)
        if not service.start(mode, interaction.user.id, dry_run=dry_run, export=export):
            return await interaction.response.send_message(
                "A reconcile pass is already running. Try again when it finishes.", ephemeral=True
            )
        log.info("Reconcile %s started by %s (dry_run=%s)", mode, interaction.user.id, dry_run)
        await interaction.response.send_message(
            f"Reconcile **{mode}** started{' (dry run)' if dry_run else ''}. I'll DM you the summary.",
            ephemeral=True,
        )

    @app_commands.command(name="wallets_reconcile", description="Sync the Role column of the wallet sheet with the server")
    @app_commands.describe(
        mode="What to do with each stored member",
        dry_run="Only report what would change. Default: false",
        export="Attach a spreadsheet with per-member results. Default: false",
    )
    @app_commands.choices(mode=MODE_CHOICES)
    @app_commands.default_permissions(manage_roles=True)
    @app_commands.guild_only()
    async def wallets_reconcile(
        self,
        interaction: discord.Interaction,
        mode: app_commands.Choice[str],
        dry_run: bool = False,
        export: bool = False,
    ):
        await self._start(interaction, mode.value, dry_run=dry_run, export=export)

    @app_commands.command(name="wallets_audit", description="Dry run with a spreadsheet of per-member results")
    @app_commands.choices(mode=MODE_CHOICES)
    @app_commands.default_permissions(manage_roles=True)
    @app_commands.guild_only()
    async def wallets_audit(self, interaction: discord.Interaction, mode: app_commands.Choice[str]):
        await self._start(interaction, mode.value, dry_run=True, export=True)

    @app_commands.command(name="priority_roles_check", description="Check the configured priority roles against the server")
    @app_commands.default_permissions(manage_roles=True)
    @app_commands.guild_only()
    async def priority_roles_check(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        guild = await self._guild(interaction)
        by_id = {r.id: r for r in await guild.fetch_roles()}

        lines = []
        missing = 0
        for i, pr in enumerate(self.priority, start=1):
            role = by_id.get(pr.role_id)
            if role is None:
                missing += 1
                lines.append(f"{i}. ✗ **{pr.label}** ({pr.role_id}) not found")
            else:
                lines.append(f"{i}. ✓ **{pr.label}** -> @{role.name}")
        head = f"Priority roles: {len(self.priority)} configured, {missing} missing"
        await interaction.followup.send("\n".join([head] + lines)[:1900], ephemeral=True)


async def setup(bot: commands.Bot):
    await bot.add_cog(Reconcile(bot))
