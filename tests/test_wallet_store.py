"""Tests for the sheet-backed wallet store."""

import asyncio

import pytest

import shared
from conftest import WALLET_A, WALLET_B, FakeSpreadsheet, RateLimited
from wallet_store import HEADER_ROW, RoleUpdate, StoreWriteError, WalletStore


def _fill(ws, n):
    for i in range(n):
        ws.rows.append([f"user{i}", str(1000 + i), "0x" + f"{i:040x}", ""])


class TestEnsureSchema:
    @pytest.mark.asyncio
    async def test_creates_missing_tab(self, retry_client):
        sh = FakeSpreadsheet()
        store = WalletStore(lambda: sh, retry_client)

        ws = await store.ensure_schema()

        assert "Wallets" in sh.tabs
        assert ws.rows[0] == HEADER_ROW

    @pytest.mark.asyncio
    async def test_rewrites_wrong_header(self, sheet, ws, store):
        ws.rows[0] = ["Username", "Discord ID"]

        await store.ensure_schema()

        assert ws.rows[0] == HEADER_ROW

    @pytest.mark.asyncio
    async def test_leaves_good_header(self, ws, store):
        await store.ensure_schema()
        await store.ensure_schema()

        assert "update" not in ws.calls

    @pytest.mark.asyncio
    async def test_custom_tab(self, sheet, retry_client):
        store = WalletStore(lambda: sheet, retry_client, tab="Holders")

        await store.ensure_schema()

        assert sheet.tabs["Holders"].rows[0] == HEADER_ROW


class TestReads:
    @pytest.mark.asyncio
    async def test_list_all_row_numbers(self, ws, store):
        ws.rows.append(["alice", "1", WALLET_A, "Alpha"])
        ws.rows.append(["", "", "", ""])
        ws.rows.append(["bob", "2", WALLET_B])

        records = await store.list_all()

        assert [(r.member_id, r.row) for r in records] == [("1", 2), ("2", 4)]
        assert records[1].role_label == ""

    @pytest.mark.asyncio
    async def test_empty_sheet(self, store):
        assert await store.list_all() == []
        assert await store.get("1") is None

    @pytest.mark.asyncio
    async def test_get_first_match(self, ws, store):
        ws.rows.append(["alice", "1", WALLET_A, "Alpha"])
        ws.rows.append(["alice2", "1", WALLET_B, ""])

        rec = await store.get("1")

        assert rec.display_name == "alice"
        assert rec.row == 2

    @pytest.mark.asyncio
    async def test_read_retries_rate_limit(self, ws, store, sleeps):
        ws.rows.append(["alice", "1", WALLET_A, "Alpha"])
        ws.failures["get_values"] = [RateLimited(), RateLimited()]

        assert len(await store.list_all()) == 1
        assert sleeps == [1.0, 2.0]


class TestUpsert:
    @pytest.mark.asyncio
    async def test_insert_then_get(self, store):
        action = await store.upsert("1", "alice", WALLET_A, "Alpha")

        rec = await store.get("1")
        assert action == "inserted"
        assert rec.wallet_address == WALLET_A
        assert rec.display_name == "alice"
        assert rec.role_label == "Alpha"

    @pytest.mark.asyncio
    async def test_update_keeps_role(self, ws, store):
        await store.upsert("1", "alice", WALLET_A, "Alpha")
        await store.upsert("2", "bob", WALLET_A)

        action = await store.upsert("1", "alice", WALLET_B)

        rec = await store.get("1")
        assert action == "updated"
        assert rec.wallet_address == WALLET_B
        assert rec.role_label == "Alpha"
        assert len(ws.data_rows()) == 2

    @pytest.mark.asyncio
    async def test_update_with_role(self, store):
        await store.upsert("1", "alice", WALLET_A, "Alpha")

        await store.upsert("1", "alice", WALLET_A, "")

        assert (await store.get("1")).role_label == ""


class TestBatchUpdateRoles:
    @pytest.mark.asyncio
    async def test_single_call(self, ws, store):
        _fill(ws, 3)
        count = await store.batch_update_roles([RoleUpdate(2, "Alpha"), RoleUpdate(4, "Boss")])

        assert count == 2
        assert ws.calls.count("batch_update") == 1
        assert [r[3] for r in ws.rows[1:]] == ["Alpha", "", "Boss"]

    @pytest.mark.asyncio
    async def test_empty_makes_no_call(self, ws, store):
        assert await store.batch_update_roles([]) == 0
        assert ws.calls == []

    @pytest.mark.asyncio
    async def test_failure_raises(self, ws, store):
        _fill(ws, 1)
        ws.failures["batch_update"] = [KeyError("nope")]

        with pytest.raises(StoreWriteError) as exc:
            await store.batch_update_roles([RoleUpdate(2, "Alpha")])
        assert exc.value.applied == 0


class TestBatchDeleteRows:
    @pytest.mark.asyncio
    async def test_highest_row_first(self, sheet, ws, store):
        _fill(ws, 8)

        deleted = await store.batch_delete_rows({5, 2, 8})

        assert deleted == 3
        assert sheet.deleted_rows == [8, 5, 2]
        assert [r[0] for r in ws.data_rows()] == ["user1", "user2", "user4", "user5", "user7"]

    @pytest.mark.asyncio
    async def test_dedupes_and_filters(self, sheet, ws, store):
        _fill(ws, 4)

        deleted = await store.batch_delete_rows([3, 3, 1, 0, -2, True, "4", 5])

        assert deleted == 2
        assert sheet.deleted_rows == [5, 3]

    @pytest.mark.asyncio
    async def test_nothing_to_delete(self, sheet, store):
        assert await store.batch_delete_rows([1]) == 0
        assert sheet.delete_batches == []

    @pytest.mark.asyncio
    async def test_chunks_of_fifty(self, sheet, ws, store):
        _fill(ws, 130)

        deleted = await store.batch_delete_rows(range(2, 122))

        assert deleted == 120
        assert sheet.delete_batches == [50, 50, 20]
        assert sheet.deleted_rows == sorted(sheet.deleted_rows, reverse=True)
        assert len(ws.data_rows()) == 10

    @pytest.mark.asyncio
    async def test_partial_failure_reports_applied(self, sheet, ws, store):
        _fill(ws, 80)
        sheet.failures = [None, KeyError("backend error")]

        with pytest.raises(StoreWriteError) as exc:
            await store.batch_delete_rows(range(2, 82))

        assert exc.value.applied == 50
        assert len(ws.data_rows()) == 30


class TestConcurrentWrites:
    @pytest.mark.asyncio
    async def test_delete_waits_for_upsert_in_flight(self, sheet, ws, store):
        for m in range(2, 8):
            ws.rows.append([f"user{m}", str(m), "0x" + f"{m:040x}", "Alpha"])

        read_done = asyncio.Event()
        release = asyncio.Event()
        real_read = store._read_rows

        async def slow_read(worksheet):
            rows = await real_read(worksheet)
            read_done.set()
            await release.wait()
            return rows

        store._read_rows = slow_read
        upsert = asyncio.create_task(store.upsert("5", "user5", WALLET_B))
        await read_done.wait()
        store._read_rows = real_read

        delete = asyncio.create_task(store.batch_delete_rows([2]))
        done, _ = await asyncio.wait({delete}, timeout=0.2)
        assert not done
        assert sheet.deleted_rows == []

        release.set()
        assert await upsert == "updated"
        assert await delete == 1

        by_id = {r[1]: r for r in ws.data_rows()}
        assert sorted(by_id) == ["3", "4", "5", "6", "7"]
        assert by_id["5"][2] == WALLET_B
        assert by_id["6"] == ["user6", "6", "0x" + f"{6:040x}", "Alpha"]

    def test_bot_shares_one_store(self, monkeypatch):
        built = []
        monkeypatch.setattr(shared, "_store", None)
        monkeypatch.setattr(shared, "build_wallet_store", lambda: built.append(object()) or built[-1])

        assert shared.get_wallet_store() is shared.get_wallet_store()
        assert len(built) == 1
