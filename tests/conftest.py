"""Pytest configuration and fixtures."""

import asyncio
import re

import gspread
import pytest

from retry import RetryingClient, RetryPolicy
from roles import PriorityRole
from wallet_store import HEADER_ROW, WalletStore

ALPHA_ID = 1399886358096379964
BOSS_ID = 1353403238241669132
ADMIN_ID = 1338964285585621094
OTHER_ID = 42


class RateLimited(Exception):
    """Stands in for a gspread APIError with a 429 response."""
    code = 429


def _row_of(a1: str) -> int:
    return int(re.match(r"^[A-Z]+(\d+)", a1.split("!")[-1]).group(1))


class FakeWorksheet:
    """Just enough of gspread.Worksheet, backed by a list of rows (row 1 first)."""

    def __init__(self, title, sheet_id, rows=None):
        self.title = title
        self.id = sheet_id
        self.rows = [list(r) for r in (rows or [])]
        self.calls = []
        self.failures = {}   # method name -> list of exceptions raised on successive calls

    def _maybe_fail(self, name):
        self.calls.append(name)
        pending = self.failures.get(name)
        if pending:
            raise pending.pop(0)

    def _set_row(self, row, values):
        while len(self.rows) < row:
            self.rows.append([])
        self.rows[row - 1] = list(values)

    def row_values(self, row):
        self._maybe_fail("row_values")
        if len(self.rows) < row:
            return []
        vals = list(self.rows[row - 1])
        while vals and vals[-1] == "":
            vals.pop()
        return vals

    def get_values(self, range_name):
        self._maybe_fail("get_values")
        start = _row_of(range_name)
        data = [list(r) + [""] * (4 - len(r)) for r in self.rows[start - 1:]]
        while data and not any(data[-1]):
            data.pop()
        return data

    def update(self, range_name=None, values=None, value_input_option=None):
        self._maybe_fail("update")
        self._set_row(_row_of(range_name), values[0])

    def append_row(self, values, value_input_option=None, insert_data_option=None):
        self._maybe_fail("append_row")
        last = len(self.rows)
        while last > 0 and not any(self.rows[last - 1]):
            last -= 1
        self.rows.insert(last, list(values))

    def batch_update(self, data, value_input_option=None):
        self._maybe_fail("batch_update")
        for d in data:
            row = _row_of(d["range"])
            cells = self.rows[row - 1]
            cells.extend([""] * (4 - len(cells)))
            cells[3] = d["values"][0][0]

    def data_rows(self):
        return [r for r in self.rows[1:] if any(r)]


class FakeSpreadsheet:
    def __init__(self):
        self.tabs = {}
        self.deleted_rows = []    # sheet row numbers, in the order they were deleted
        self.delete_batches = []  # size of each batch_update call
        self.failures = []        # per successive batch_update call: an exception, or None to succeed

    def worksheet(self, title):
        try:
            return self.tabs[title]
        except KeyError:
            raise gspread.WorksheetNotFound(title) from None

    def add_worksheet(self, title, rows, cols):
        ws = FakeWorksheet(title, sheet_id=len(self.tabs) + 100)
        self.tabs[title] = ws
        return ws

    def batch_update(self, body):
        if self.failures:
            err = self.failures.pop(0)
            if err is not None:
                raise err
        requests = body["requests"]
        self.delete_batches.append(len(requests))
        by_id = {ws.id: ws for ws in self.tabs.values()}
        for req in requests:
            rng = req["deleteDimension"]["range"]
            assert rng["dimension"] == "ROWS"
            assert rng["endIndex"] == rng["startIndex"] + 1
            self.deleted_rows.append(rng["startIndex"] + 1)
            del by_id[rng["sheetId"]].rows[rng["startIndex"]]


class FakeDirectory:
    """Members by id: a set of role ids, None (not in guild) or an exception."""

    def __init__(self, members=None, delay=0.0):
        self.members = dict(members or {})
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def lookup(self, member_id):
        self.calls.append(member_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            v = self.members.get(member_id)
            if isinstance(v, Exception):
                raise v
            return frozenset(v) if v is not None else None
        finally:
            self.active -= 1


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, recipient, message, attachment=None):
        self.sent.append((recipient, message, attachment))


@pytest.fixture
def priority():
    return (
        PriorityRole(ADMIN_ID, "Admin"),
        PriorityRole(BOSS_ID, "Boss"),
        PriorityRole(ALPHA_ID, "Alpha"),
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def retry_client(sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return RetryingClient(RetryPolicy(), sleep=fake_sleep, rand=lambda: 0.0)


@pytest.fixture
def sheet():
    sh = FakeSpreadsheet()
    ws = sh.add_worksheet("Wallets", rows=1000, cols=4)
    ws.rows.append(list(HEADER_ROW))
    return sh


@pytest.fixture
def ws(sheet):
    return sheet.tabs["Wallets"]


@pytest.fixture
def store(sheet, retry_client):
    return WalletStore(lambda: sheet, retry_client)


WALLET_A = "0x" + "a" * 40
WALLET_B = "0x" + "b" * 40
WALLET_C = "0x" + "c" * 40
