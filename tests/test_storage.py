"""Tests for the repositories and schema migration."""

import json
from types import SimpleNamespace

import pytest

from conftest import MARKET, TOKEN, WALLET, open_position
from copytrade.errors import NotFoundError, StorageError
from copytrade.migrate import run_migration
from copytrade.models import ActivityType, TradeRecord, TradeSide, TradeStatus, TraderProfile
from copytrade.storage import clickhouse as clickhouse_module
from copytrade.storage.clickhouse import ClickHouseRepository
from copytrade.storage.repository import log_activity


def trade(trader_id: str, status: TradeStatus = TradeStatus.FAILED, retry_count: int = 1) -> TradeRecord:
    return TradeRecord(
        trader_id=trader_id,
        market_id=MARKET,
        token_id=TOKEN,
        side=TradeSide.BUY,
        requested_amount=10,
        status=status,
        retry_count=retry_count,
    )


class TestMemoryRepository:
    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, repo, trader):
        fetched = await repo.get_trader(trader.id)
        fetched.name = "changed"
        assert (await repo.get_trader(trader.id)).name == "whale"

    @pytest.mark.asyncio
    async def test_wallet_lookup_ignores_case(self, repo, trader):
        found = await repo.get_trader_by_wallet(WALLET.upper().replace("0X", "0x"))
        assert found.id == trader.id

    @pytest.mark.asyncio
    async def test_update_unknown_raises(self, repo):
        with pytest.raises(NotFoundError):
            await repo.update_trader("missing", name="x")
        with pytest.raises(NotFoundError):
            await repo.update_trade("missing", status=TradeStatus.EXECUTED)

    @pytest.mark.asyncio
    async def test_open_position_lookups(self, repo, trader):
        held = await open_position(repo, trader.id, shares=10, price=0.5)

        assert (await repo.find_open_position(trader.id, MARKET, TOKEN)).id == held.id
        assert (await repo.find_open_position_by_token(trader.id, TOKEN)).id == held.id
        assert await repo.count_open_positions(trader.id) == 1

    @pytest.mark.asyncio
    async def test_retryable_trades(self, repo, trader):
        old = await repo.create_trade(trade(trader.id, retry_count=1))
        await repo.create_trade(trade(trader.id, retry_count=3))
        await repo.create_trade(trade(trader.id, status=TradeStatus.EXECUTED))

        eligible = await repo.list_retryable_trades(max_retries=3, limit=10)

        assert [t.id for t in eligible] == [old.id]

    @pytest.mark.asyncio
    async def test_count_by_status(self, repo, trader):
        await repo.create_trade(trade(trader.id))
        await repo.create_trade(trade(trader.id, status=TradeStatus.EXECUTED))

        counts = await repo.count_trades_by_status()

        assert counts[TradeStatus.FAILED] == 1
        assert counts[TradeStatus.EXECUTED] == 1
        assert counts[TradeStatus.PENDING] == 0

    @pytest.mark.asyncio
    async def test_activity_newest_first(self, repo, trader):
        await log_activity(repo, ActivityType.INFO, "first", trader_id=trader.id)
        await log_activity(repo, ActivityType.INFO, "second", trader_id=trader.id)

        assert [a.message for a in await repo.list_activity(trader.id)] == ["second", "first"]

    @pytest.mark.asyncio
    async def test_activity_failure_is_swallowed(self, repo):
        async def broken(entry):
            raise RuntimeError("disk full")

        repo.append_activity = broken

        await log_activity(repo, ActivityType.ERROR, "lost")


class FakeClickHouse:
    def __init__(self, rows=None, fail: int = 0) -> None:
        self.inserts = []
        self.queries = []
        self.commands = []
        self.rows = rows or []
        self.fail = fail

    def insert(self, table, rows, column_names=None):
        if self.fail:
            self.fail -= 1
            raise ConnectionError("connection reset")
        self.inserts.append((table, rows, column_names))

    def query(self, sql, parameters=None):
        self.queries.append((sql, parameters))
        return SimpleNamespace(result_rows=self.rows)

    def command(self, sql):
        self.commands.append(sql)

    def close(self):
        pass


def clickhouse_with(fake: FakeClickHouse) -> ClickHouseRepository:
    repo = ClickHouseRepository(host="localhost")
    repo._get_client = lambda: fake
    return repo


class TestClickHouseRepository:
    @pytest.mark.asyncio
    async def test_trader_written_with_payload(self):
        fake = FakeClickHouse()
        repo = clickhouse_with(fake)
        trader = TraderProfile(wallet_address=WALLET.upper().replace("0X", "0x"), name="whale")

        await repo.create_trader(trader)

        table, rows, columns = fake.inserts[0]
        assert table == "traders"
        row = dict(zip(columns, rows[0]))
        assert row["wallet_address"] == WALLET
        assert row["deleted"] == 0
        assert json.loads(row["payload"])["name"] == "whale"

    @pytest.mark.asyncio
    async def test_reads_latest_payload(self):
        stored = TraderProfile(wallet_address=WALLET, name="whale")
        fake = FakeClickHouse(rows=[(stored.model_dump_json(),)])
        repo = clickhouse_with(fake)

        found = await repo.get_trader(stored.id)

        assert found == stored
        sql, parameters = fake.queries[0]
        assert "FINAL" in sql
        assert parameters == {"id": stored.id}

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, monkeypatch):
        monkeypatch.setattr(clickhouse_module, "STORAGE_BASE_BACKOFF", 0)
        fake = FakeClickHouse(fail=1)
        repo = clickhouse_with(fake)

        await repo.create_trade(trade("t1"))

        assert len(fake.inserts) == 1

    @pytest.mark.asyncio
    async def test_persistent_failure_raises_storage_error(self, monkeypatch):
        monkeypatch.setattr(clickhouse_module, "STORAGE_BASE_BACKOFF", 0)
        repo = clickhouse_with(FakeClickHouse(fail=10))

        with pytest.raises(StorageError):
            await repo.create_trade(trade("t1"))

    @pytest.mark.asyncio
    async def test_migration_runs_each_statement(self):
        fake = FakeClickHouse()
        repo = clickhouse_with(fake)

        await run_migration(repo)

        assert len(fake.commands) >= 4
        assert all(cmd.strip() and ";" not in cmd for cmd in fake.commands)
        assert any("CREATE TABLE IF NOT EXISTS trades" in cmd for cmd in fake.commands)
