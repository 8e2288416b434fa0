"""Tests for rewardledger.services.ingestion."""

from datetime import UTC, datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import Settings
from db.models import AccountTxs, Txs
from rewardledger.services._helpers import dump_json, load_json, new_id
from rewardledger.services.errors import AnnotationLengthMismatch, ImpossibleState
from rewardledger.services.ingestion import TxIngestionService, unique_hashes
from tests.conftest import ACCOUNT_A, FakeLcdClient, make_tx, seed_block

BLOCK_TS: datetime = datetime(2021, 10, 1, 0, 0, 5, tzinfo=UTC)


def _count(session: Session, model: type) -> int:
    return session.scalar(select(func.count()).select_from(model)) or 0


def _stored(session: Session, tx_hash: str) -> Txs:
    tx = session.scalar(select(Txs).where(Txs.hash == tx_hash))
    assert tx is not None
    return tx


def test_unique_hashes_is_case_insensitive() -> None:
    assert unique_hashes(["AA", "bb", "aa", "BB", "cc"]) == ["AA", "bb", "cc"]


class TestIngestBlock:
    @pytest.mark.asyncio
    async def test_persists_resolved_tx(self, session: Session, settings: Settings) -> None:
        block = seed_block(session, 5_000_000, BLOCK_TS)
        lcd = FakeLcdClient(txs={"AA": make_tx("AA")})
        svc = TxIngestionService(session, lcd, settings)

        result = await svc.ingest_block(block, ["AA"])

        assert result.txs_persisted == 1
        assert result.account_txs_created == 2
        stored = _stored(session, "aa")
        data = load_json(stored.data) or {}
        assert data["tx"]["value"]["fee"]["amount"] == [{"denom": "uusd", "amount": "980"}]
        assert data["logs"][0]["log"] == {"tax": "20uusd"}
        assert stored.block_id == block.id
        assert stored.timestamp == "2021-10-01T00:00:05.000000+00:00"
        assert _count(session, AccountTxs) == 2

    @pytest.mark.asyncio
    async def test_duplicate_hashes_fetched_once(self, session: Session, settings: Settings) -> None:
        block = seed_block(session, 5_000_000, BLOCK_TS)
        lcd = FakeLcdClient(txs={"AA": make_tx("AA")})
        svc = TxIngestionService(session, lcd, settings)

        result = await svc.ingest(["AA", "aa", "AA"], block)

        assert result.txs_requested == 1
        assert [c for c in lcd.calls if c[0] == "get_tx"] == [("get_tx", "AA")]
        assert _count(session, Txs) == 1

    @pytest.mark.asyncio
    async def test_policy_fetched_once_per_block(self, session: Session, settings: Settings) -> None:
        block = seed_block(session, 5_000_000, BLOCK_TS)
        lcd = FakeLcdClient(txs={h: make_tx(h) for h in ("AA", "BB", "CC")})
        svc = TxIngestionService(session, lcd, settings)

        await svc.ingest(["AA", "BB", "CC"], block)

        assert [c for c in lcd.calls if c[0] == "get_tax_rate"] == [("get_tax_rate", "5000000")]

    @pytest.mark.asyncio
    async def test_fetch_failure_drops_only_that_tx(self, session: Session, settings: Settings) -> None:
        block = seed_block(session, 5_000_000, BLOCK_TS)
        lcd = FakeLcdClient(txs={"AA": make_tx("AA")})
        svc = TxIngestionService(session, lcd, settings)

        result = await svc.ingest(["AA", "MISSING"], block)

        assert result.txs_persisted == 1
        assert result.txs_dropped == 1
        assert len(result.errors) == 1
        assert "MISSING" in result.errors[0]

    @pytest.mark.asyncio
    async def test_missing_tax_field_drops_only_that_tx(
        self, session: Session, settings: Settings
    ) -> None:
        block = seed_block(session, 5_000_000, BLOCK_TS)
        broken = make_tx("BB", msgs=[{"type": "wasm/MsgExecuteContract", "value": {}}])
        lcd = FakeLcdClient(txs={"AA": make_tx("AA"), "BB": broken})
        svc = TxIngestionService(session, lcd, settings)

        result = await svc.ingest(["AA", "BB"], block)

        assert result.txs_persisted == 1
        assert _count(session, Txs) == 1
        assert "BB" in result.errors[0]

    @pytest.mark.asyncio
    async def test_log_count_mismatch_aborts_batch(self, session: Session, settings: Settings) -> None:
        block = seed_block(session, 5_000_000, BLOCK_TS)
        broken = make_tx("BB")
        broken["logs"].append({"msg_index": 1, "log": "", "events": []})
        lcd = FakeLcdClient(txs={"AA": make_tx("AA"), "BB": broken})
        svc = TxIngestionService(session, lcd, settings)

        with pytest.raises(AnnotationLengthMismatch):
            await svc.ingest(["AA", "BB"], block)

        assert _count(session, Txs) == 0
        assert _count(session, AccountTxs) == 0


class TestProtection:
    @pytest.mark.asyncio
    async def test_successful_tx_is_never_overwritten(self, session: Session, settings: Settings) -> None:
        block = seed_block(session, 5_000_000, BLOCK_TS)
        lcd = FakeLcdClient(txs={"AA": make_tx("AA")})
        svc = TxIngestionService(session, lcd, settings)
        await svc.ingest(["AA"], block)
        original = _stored(session, "aa").data

        lcd.txs["AA"] = make_tx("AA", fee=[{"denom": "uusd", "amount": "5000"}])
        result = await svc.ingest(["AA"], block)

        assert result.txs_protected == 1
        assert result.txs_persisted == 0
        assert _stored(session, "aa").data == original

    @pytest.mark.asyncio
    async def test_failed_tx_is_replaced(self, session: Session, settings: Settings) -> None:
        block = seed_block(session, 5_000_000, BLOCK_TS)
        lcd = FakeLcdClient(txs={"BB": make_tx("BB", code=5)})
        svc = TxIngestionService(session, lcd, settings)
        await svc.ingest(["BB"], block)
        assert (load_json(_stored(session, "bb").data) or {}).get("code") == 5

        lcd.txs["BB"] = make_tx("BB")
        result = await svc.ingest(["BB"], block)

        assert result.txs_persisted == 1
        assert "code" not in (load_json(_stored(session, "bb").data) or {})
        assert _count(session, Txs) == 1

    @pytest.mark.asyncio
    async def test_reingesting_failed_tx_is_idempotent(self, session: Session, settings: Settings) -> None:
        block = seed_block(session, 5_000_000, BLOCK_TS)
        failed = make_tx("BB", code=5)
        failed["tx"]["value"]["memo"] = ACCOUNT_A
        lcd = FakeLcdClient(txs={"BB": failed})
        svc = TxIngestionService(session, lcd, settings)

        await svc.ingest(["BB"], block)
        first_data = _stored(session, "bb").data
        first_accounts = _count(session, AccountTxs)
        await svc.ingest(["BB"], block)

        assert _count(session, Txs) == 1
        assert _count(session, AccountTxs) == first_accounts
        assert _stored(session, "bb").data == first_data

    @pytest.mark.asyncio
    async def test_missing_counterpart_is_impossible(
        self, session: Session, settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        block = seed_block(session, 5_000_000, BLOCK_TS)
        stray = Txs(
            id=new_id(),
            chain_id=block.chain_id,
            hash="zz",
            timestamp=block.timestamp,
            data=dump_json(make_tx("ZZ")),
            block_id=block.id,
        )
        session.add(stray)
        session.flush()
        lcd = FakeLcdClient(txs={"AA": make_tx("AA")})
        svc = TxIngestionService(session, lcd, settings)
        monkeypatch.setattr(svc, "_find_txs", lambda chain_id, hashes: [stray])

        with pytest.raises(ImpossibleState):
            await svc.ingest(["AA"], block)


class TestAccountTxChunks:
    @pytest.mark.asyncio
    async def test_rows_written_across_chunks(self, session: Session, settings: Settings) -> None:
        settings.account_tx_chunk_size = 1
        block = seed_block(session, 5_000_000, BLOCK_TS)
        lcd = FakeLcdClient(txs={h: make_tx(h) for h in ("AA", "BB")})
        svc = TxIngestionService(session, lcd, settings)

        result = await svc.ingest(["AA", "BB"], block)

        assert result.account_txs_created == 4
        assert _count(session, AccountTxs) == 4


class TestAtomicity:
    @pytest.mark.asyncio
    async def test_failed_commit_rolls_back_whole_batch(
        self, session: Session, settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        block = seed_block(session, 5_000_000, BLOCK_TS)
        lcd = FakeLcdClient(txs={"BB": make_tx("BB", code=5)})
        svc = TxIngestionService(session, lcd, settings)
        await svc.ingest(["BB"], block)
        failed_data = _stored(session, "bb").data
        assert _count(session, AccountTxs) == 2

        lcd.txs["BB"] = make_tx("BB")
        lcd.txs["CC"] = make_tx("CC")

        def failing_commit() -> None:
            raise RuntimeError("database is locked")

        monkeypatch.setattr(session, "commit", failing_commit)
        with pytest.raises(RuntimeError, match="database is locked"):
            await svc.ingest(["BB", "CC"], block)
        monkeypatch.undo()

        session.expire_all()
        assert _count(session, Txs) == 1
        assert _stored(session, "bb").data == failed_data
        assert _count(session, AccountTxs) == 2
