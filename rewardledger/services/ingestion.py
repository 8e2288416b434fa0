"""Ingestion service for resolving and storing a block's transactions."""

import asyncio
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from sqlalchemy import and_, delete, select
from sqlalchemy.orm import Session

from config import Settings, get_settings
from db.connection import dialect_insert
from db.models import AccountTxs, Blocks, Txs
from rewardledger.services._helpers import dump_json, iso_utc, load_json, new_id, parse_timestamp
from rewardledger.services.account_tx import generate_account_txs, sanitize_tx
from rewardledger.services.errors import (
    AnnotationLengthMismatch,
    ChainClientError,
    ImpossibleState,
    TaxResolutionError,
)
from rewardledger.services.lcd_client import LcdClient
from rewardledger.services.schemas.chain import TaxPolicy
from rewardledger.services.schemas.results import IngestionResult
from rewardledger.services.tax_policy import fetch_tax_policy
from rewardledger.services.tax_resolver import resolve_tax

logger = structlog.get_logger(__name__)


@dataclass
class PendingTx:
    hash: str
    timestamp: str
    data: dict[str, Any]


def _chunks(items: list[AccountTxs], size: int) -> Iterator[list[AccountTxs]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def unique_hashes(tx_hashes: Iterable[str]) -> list[str]:
    """Case-insensitive dedupe keeping the first spelling of each hash."""
    seen: dict[str, str] = {}
    for tx_hash in tx_hashes:
        seen.setdefault(tx_hash.lower(), tx_hash)
    return list(seen.values())


class TxIngestionService:
    """Fetches, tax-resolves and persists the transactions of one block."""

    def __init__(
        self,
        session: Session,
        lcd_client: Optional[LcdClient] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.lcd_client = lcd_client or LcdClient()
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Fetch & resolve
    # ------------------------------------------------------------------

    async def _fetch_and_resolve(
        self,
        tx_hash: str,
        block: Blocks,
        policy: TaxPolicy,
        semaphore: asyncio.Semaphore,
        errors: list[str],
    ) -> Optional[PendingTx]:
        async with semaphore:
            try:
                raw = await self.lcd_client.get_tx(tx_hash)
                resolved = resolve_tax(raw, policy, block.chain_id)
            except AnnotationLengthMismatch:
                logger.error(
                    "Log count does not match message count", txhash=tx_hash, height=block.height
                )
                raise
            except (ChainClientError, TaxResolutionError) as e:
                logger.warning(
                    "Dropping transaction", txhash=tx_hash, height=block.height, error=str(e)
                )
                errors.append(f"{tx_hash}: {e}")
                return None
            except Exception as e:
                logger.exception("Unexpected error resolving transaction", txhash=tx_hash)
                errors.append(f"{tx_hash}: {e}")
                return None

        raw_timestamp = resolved.get("timestamp")
        timestamp = iso_utc(parse_timestamp(raw_timestamp)) if raw_timestamp else block.timestamp
        return PendingTx(
            hash=str(resolved.get("txhash") or tx_hash).lower(),
            timestamp=timestamp,
            data=sanitize_tx(resolved),
        )

    async def _generate_pending(
        self, tx_hashes: list[str], block: Blocks, errors: list[str]
    ) -> list[PendingTx]:
        policy = await fetch_tax_policy(self.lcd_client, block.height)
        semaphore = asyncio.Semaphore(max(1, self.settings.chain.max_concurrency))
        results = await asyncio.gather(
            *(
                self._fetch_and_resolve(tx_hash, block, policy, semaphore, errors)
                for tx_hash in tx_hashes
            )
        )
        return [pending for pending in results if pending is not None]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _find_txs(self, chain_id: str, hashes: list[str]) -> list[Txs]:
        if not hashes:
            return []
        stmt = (
            select(Txs)
            .where(and_(Txs.chain_id == chain_id, Txs.hash.in_(hashes)))
            .execution_options(populate_existing=True)
        )
        return list(self.session.scalars(stmt).all())

    def _drop_protected(self, pending: list[PendingTx], chain_id: str) -> int:
        """Remove pending txs whose stored counterpart already succeeded."""
        existing = self._find_txs(chain_id, [p.hash for p in pending])
        protected = 0
        for stored in existing:
            data = load_json(stored.data) or {}
            if data.get("code"):
                continue

            idx = next((i for i, p in enumerate(pending) if p.hash == stored.hash), -1)
            if idx < 0:
                raise ImpossibleState(
                    f"Protected tx {stored.hash} has no pending counterpart"
                )
            logger.info("Existing successful tx found", txhash=stored.hash)
            pending.pop(idx)
            protected += 1
        return protected

    def _upsert_txs(self, pending: list[PendingTx], block: Blocks) -> list[Txs]:
        rows = [
            {
                "id": new_id(),
                "chain_id": block.chain_id,
                "hash": p.hash,
                "timestamp": p.timestamp,
                "data": dump_json(p.data),
                "block_id": block.id,
            }
            for p in pending
        ]
        stmt = dialect_insert(self.session, Txs).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Txs.chain_id, Txs.hash],
            set_={
                "timestamp": stmt.excluded.timestamp,
                "data": stmt.excluded.data,
                "block_id": stmt.excluded.block_id,
            },
        )
        self.session.execute(stmt)

        persisted = self._find_txs(block.chain_id, [p.hash for p in pending])
        self.session.execute(
            delete(AccountTxs).where(AccountTxs.tx_id.in_([tx.id for tx in persisted]))
        )
        return persisted

    def _save_account_txs(self, persisted: list[Txs], pending: list[PendingTx]) -> int:
        data_by_hash = {p.hash: p.data for p in pending}
        account_txs: list[AccountTxs] = []
        for tx in persisted:
            account_txs.extend(generate_account_txs(tx, data_by_hash[tx.hash]))

        # Chunks commit one at a time; a failed chunk leaves earlier ones in place.
        for chunk in _chunks(account_txs, self.settings.account_tx_chunk_size):
            self.session.add_all(chunk)
            self.session.commit()
        return len(account_txs)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def ingest(self, tx_hashes: Iterable[str], block: Blocks) -> IngestionResult:
        hashes = unique_hashes(tx_hashes)
        errors: list[str] = []

        pending = await self._generate_pending(hashes, block, errors)
        fetched = len(pending)
        protected = self._drop_protected(pending, block.chain_id)

        persisted: list[Txs] = []
        account_txs_created = 0
        if pending:
            try:
                persisted = self._upsert_txs(pending, block)
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
            account_txs_created = self._save_account_txs(persisted, pending)

        logger.info(
            "Persisted transactions",
            height=block.height,
            requested=len(hashes),
            fetched=fetched,
            protected=protected,
            txs=len(persisted),
            account_txs=account_txs_created,
        )
        return IngestionResult(
            block_height=block.height,
            txs_requested=len(hashes),
            txs_fetched=fetched,
            txs_persisted=len(persisted),
            txs_protected=protected,
            account_txs_created=account_txs_created,
            errors=errors,
        )

    async def ingest_block(self, block: Blocks, tx_hashes: Iterable[str]) -> IngestionResult:
        return await self.ingest(tx_hashes, block)
