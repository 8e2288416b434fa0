"""Worker: fetch, tax-resolve and persist the transactions of one block.

Usage:
    python -m worker.ingest_block --height 5000000 --hash 0A1B... --hash 0C2D...
    python -m worker.ingest_block --height 5000000 --hash-file hashes.txt
"""

import argparse
import asyncio
import sys
from pathlib import Path

import structlog
from sqlalchemy import and_, select

from config import get_settings
from db.connection import get_session, init_database
from db.models import Blocks
from rewardledger.services.ingestion import TxIngestionService
from rewardledger.services.lcd_client import LcdClient
from rewardledger.services.schemas.results import IngestionResult

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def read_hash_file(raw: str) -> list[str]:
    path = Path(raw)
    if not path.is_file():
        raise argparse.ArgumentTypeError(f"Hash file '{raw}' does not exist")
    return [line.strip() for line in path.read_text().splitlines() if line.strip()]


async def run(height: int, tx_hashes: list[str]) -> IngestionResult | None:
    chain_id = get_settings().chain.chain_id
    with get_session() as session:
        block = session.scalar(
            select(Blocks).where(and_(Blocks.chain_id == chain_id, Blocks.height == height))
        )
        if block is None:
            logger.error("Block not found", chain_id=chain_id, height=height)
            return None

        async with LcdClient() as lcd_client:
            service = TxIngestionService(session, lcd_client)
            return await service.ingest_block(block, tx_hashes)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Ingest the transactions of one block")
    parser.add_argument("--height", required=True, type=int, help="Block height")
    parser.add_argument(
        "--hash", dest="hashes", action="append", default=[], help="Transaction hash (repeatable)"
    )
    parser.add_argument(
        "--hash-file", type=read_hash_file, help="File with one transaction hash per line"
    )
    args = parser.parse_args(argv)

    tx_hashes: list[str] = args.hashes + (args.hash_file or [])
    if not tx_hashes:
        parser.error("at least one --hash or a --hash-file is required")

    init_database()
    logger.info("Starting transaction ingestion", height=args.height, txs=len(tx_hashes))

    result = asyncio.run(run(args.height, tx_hashes))
    if result is None:
        sys.exit(1)

    logger.info(
        "Ingestion complete",
        height=result.block_height,
        requested=result.txs_requested,
        persisted=result.txs_persisted,
        protected=result.txs_protected,
        dropped=result.txs_dropped,
        account_txs=result.account_txs_created,
    )

    if result.errors:
        for err in result.errors[:10]:
            logger.error("ingestion_error", detail=err)
        if len(result.errors) > 10:
            logger.warning("truncated_errors", remaining=len(result.errors) - 10)
        sys.exit(1)


if __name__ == "__main__":
    main()
