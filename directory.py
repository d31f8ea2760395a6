# directory.py
import logging
from typing import Optional, Protocol

import discord

from roles import HeldRoles, held_roles_from

log = logging.getLogger(__name__)


class MembershipDirectory(Protocol):
    async def lookup(self, member_id: str) -> Optional[HeldRoles]:
        """Current role ids of the member, or None if they are not in the guild."""
        ...


class GuildDirectory:
    """Looks members up in one guild. Cache first, then the API."""

    def __init__(self, guild: discord.Guild):
        self.guild = guild

    async def lookup(self, member_id: str) -> Optional[HeldRoles]:
        try:
            uid = int(str(member_id).strip())
        except ValueError:
            log.debug("Not a member id: %r", member_id)
            return None

        member = self.guild.get_member(uid)
        if member is None:
            try:
                member = await self.guild.fetch_member(uid)
            except discord.NotFound:
                return None
        return held_roles_from(member)
