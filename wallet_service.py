# wallet_service.py
import logging
import re
from typing import Optional

from roles import HeldRoles, PriorityRoleList, resolve_priority_role
from wallet_store import WalletRecord, WalletStore

log = logging.getLogger(__name__)

# Format check only, no EIP-55 checksum.
EVM_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")


class InvalidWalletAddress(ValueError):
    pass


def is_evm_address(s: str) -> bool:
    return bool(EVM_ADDRESS.match(s or ""))


class WalletService:
    def __init__(self, store: WalletStore, priority: PriorityRoleList):
        self.store = store
        self.priority = priority

    async def submit_or_update(
        self,
        member_id: str,
        display_name: str,
        wallet_address: str,
        held: Optional[HeldRoles] = None,
    ) -> str:
        """Validate and store a submission. Returns "inserted" or "updated".

        When `held` is given the Role column is set from it; otherwise the
        stored role is left alone.
        """
        wallet = (wallet_address or "").strip()
        if not is_evm_address(wallet):
            raise InvalidWalletAddress(wallet)
        role = resolve_priority_role(held, self.priority) if held is not None else None
        action = await self.store.upsert(str(member_id), display_name, wallet, role)
        log.info("Wallet %s for %s (%s)", action, member_id, role or "no role")
        return action

    async def lookup(self, member_id: str) -> Optional[WalletRecord]:
        return await self.store.get(str(member_id))
