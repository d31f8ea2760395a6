# wallet_store.py
"""
Wallet records kept in one Google Sheet tab.

Layout: row 1 is the header, data starts at row 2, one row per member.
Row numbers are only meaningful against the read they came from; deleting a
row shifts every row below it up by one. Writes on one store are serialized
so an upsert never lands on a row a concurrent delete has shifted.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

import gspread

from retry import RetryingClient

log = logging.getLogger(__name__)

DEFAULT_TAB = "Wallets"
HEADER_ROW = ["Discord Username", "Discord ID", "EVM Wallet", "Role"]
FIRST_DATA_ROW = 2
DELETE_CHUNK = 50
ROLE_COL = "D"
LAST_COL = "D"


@dataclass
class WalletRecord:
    member_id: str
    display_name: str
    wallet_address: str
    role_label: str = ""
    row: Optional[int] = None  # sheet row this was read from

    def cells(self) -> List[str]:
        return [self.display_name, self.member_id, self.wallet_address, self.role_label or ""]


@dataclass(frozen=True)
class RoleUpdate:
    row: int
    label: str


class StoreWriteError(Exception):
    """A batch write failed after `applied` items had already been written."""

    def __init__(self, message: str, applied: int = 0):
        super().__init__(message)
        self.applied = applied


def _record(cells: Sequence[str], row: int) -> WalletRecord:
    cells = list(cells) + [""] * (len(HEADER_ROW) - len(cells))
    return WalletRecord(
        display_name=str(cells[0]).strip(),
        member_id=str(cells[1]).strip(),
        wallet_address=str(cells[2]).strip(),
        role_label=str(cells[3]).strip(),
        row=row,
    )


class WalletStore:
    def __init__(
        self,
        open_spreadsheet: Callable[[], gspread.Spreadsheet],
        retry: RetryingClient | None = None,
        tab: str = DEFAULT_TAB,
    ):
        self._open = open_spreadsheet
        self._sh: gspread.Spreadsheet | None = None
        self.retry = retry or RetryingClient()
        self.tab = tab
        self._write_lock = asyncio.Lock()

    async def _spreadsheet(self) -> gspread.Spreadsheet:
        if self._sh is None:
            self._sh = await self.retry.execute(self._open, description="open spreadsheet")
        return self._sh

    async def ensure_schema(self) -> gspread.Worksheet:
        """Make sure the tab exists and row 1 is our header. Safe to call often."""
        sh = await self._spreadsheet()
        try:
            ws = await self.retry.execute(sh.worksheet, self.tab, description="get worksheet")
        except gspread.WorksheetNotFound:
            log.info("Worksheet %r missing, creating it", self.tab)
            ws = await self.retry.execute(
                sh.add_worksheet, title=self.tab, rows=1000, cols=len(HEADER_ROW),
                description="add worksheet",
            )

        first = await self.retry.execute(ws.row_values, 1, description="read header")
        if not first or any(i >= len(first) or first[i] != h for i, h in enumerate(HEADER_ROW)):
            log.info("Writing header row to %r", self.tab)
            await self.retry.execute(
                ws.update,
                range_name=f"A1:{LAST_COL}1",
                values=[HEADER_ROW],
                value_input_option="RAW",
                description="write header",
            )
        return ws

    async def _read_rows(self, ws: gspread.Worksheet) -> List[List[str]]:
        vals = await self.retry.execute(
            ws.get_values, f"A{FIRST_DATA_ROW}:{LAST_COL}", description="read rows"
        )
        return vals or []

    async def list_all(self) -> List[WalletRecord]:
        ws = await self.ensure_schema()
        out = []
        for i, cells in enumerate(await self._read_rows(ws)):
            if not any(str(c).strip() for c in cells):
                continue
            out.append(_record(cells, i + FIRST_DATA_ROW))
        return out

    async def get(self, member_id: str) -> Optional[WalletRecord]:
        member_id = str(member_id)
        for rec in await self.list_all():
            if rec.member_id == member_id:
                return rec
        return None

    async def upsert(
        self,
        member_id: str,
        display_name: str,
        wallet_address: str,
        role_label: Optional[str] = None,
    ) -> str:
        """
        Insert or overwrite the row for `member_id`. Returns "inserted" or "updated".

        role_label=None keeps the stored role on update. Writes from another
        process are not coordinated; there the last write wins.
        """
        member_id = str(member_id)
        ws = await self.ensure_schema()
        # the row found by the scan must still be the member's row at write time
        async with self._write_lock:
            existing = None
            for i, cells in enumerate(await self._read_rows(ws)):
                if len(cells) > 1 and str(cells[1]).strip() == member_id:
                    existing = _record(cells, i + FIRST_DATA_ROW)
                    break

            if existing is None:
                rec = WalletRecord(member_id, display_name, wallet_address, role_label or "")
                await self.retry.execute(
                    ws.append_row,
                    rec.cells(),
                    value_input_option="RAW",
                    insert_data_option="INSERT_ROWS",
                    description="append wallet",
                )
                log.info("Inserted wallet for %s", member_id)
                return "inserted"

            rec = WalletRecord(
                member_id, display_name, wallet_address,
                existing.role_label if role_label is None else role_label,
                row=existing.row,
            )
            await self.retry.execute(
                ws.update,
                range_name=f"A{rec.row}:{LAST_COL}{rec.row}",
                values=[rec.cells()],
                value_input_option="RAW",
                description="update wallet",
            )
        log.info("Updated wallet for %s (row %d)", member_id, rec.row)
        return "updated"

    async def batch_update_roles(self, updates: Iterable[RoleUpdate]) -> int:
        updates = list(updates)
        if not updates:
            return 0
        ws = await self.ensure_schema()
        data = [
            {"range": f"{ROLE_COL}{u.row}", "values": [[u.label or ""]]}
            for u in updates
        ]
        try:
            async with self._write_lock:
                await self.retry.execute(
                    ws.batch_update, data, value_input_option="RAW", description="batch update roles"
                )
        except Exception as e:
            raise StoreWriteError(f"role update failed: {e}", applied=0) from e
        log.info("Updated role on %d row(s)", len(updates))
        return len(updates)

    async def batch_delete_rows(self, rows: Iterable[int]) -> int:
        """
        Delete the given sheet rows. Rows are deduplicated and deleted highest
        first, in chunks of DELETE_CHUNK requests, so every planned row number
        stays valid while the batch is applied.
        """
        ordered = sorted(
            {r for r in rows if isinstance(r, int) and not isinstance(r, bool) and r >= FIRST_DATA_ROW},
            reverse=True,
        )
        if not ordered:
            return 0
        ws = await self.ensure_schema()
        sh = await self._spreadsheet()

        deleted = 0
        async with self._write_lock:
            for start in range(0, len(ordered), DELETE_CHUNK):
                chunk = ordered[start:start + DELETE_CHUNK]
                body = {
                    "requests": [
                        {
                            "deleteDimension": {
                                "range": {
                                    "sheetId": ws.id,
                                    "dimension": "ROWS",
                                    "startIndex": row - 1,  # 0-based, end exclusive
                                    "endIndex": row,
                                }
                            }
                        }
                        for row in chunk
                    ]
                }
                try:
                    await self.retry.execute(sh.batch_update, body, description="batch delete rows")
                except Exception as e:
                    log.warning("Row delete failed after %d of %d row(s)", deleted, len(ordered))
                    raise StoreWriteError(f"row delete failed: {e}", applied=deleted) from e
                deleted += len(chunk)
        log.info("Deleted %d row(s) from %r", deleted, self.tab)
        return deleted
