"""Worker: fold one minute of blocks and transactions into reward ledger rows.

Usage:
    python -m worker.collect_reward --timestamp 2021-10-01T00:00:00Z
    python -m worker.collect_reward --timestamp 2021-10-01T00:00:00Z --height 4985300
"""

import argparse
import asyncio
from datetime import datetime

import structlog

from db.connection import get_session, init_database
from rewardledger.services._helpers import parse_timestamp
from rewardledger.services.aggregation import RewardAggregationService
from rewardledger.services.lcd_client import LcdClient
from rewardledger.services.schemas.results import AggregationResult

logger = structlog.get_logger(__name__)


def parse_window(raw: str) -> datetime:
    try:
        return parse_timestamp(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Invalid timestamp '{raw}'. Expected ISO-8601 (e.g. 2021-10-01T00:00:00Z)"
        )


async def run(timestamp: datetime, height: int | None) -> AggregationResult:
    with get_session() as session:
        async with LcdClient() as lcd_client:
            service = RewardAggregationService(session, lcd_client)
            return await service.aggregate(timestamp, height=height)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Aggregate one minute into reward ledger rows")
    parser.add_argument(
        "--timestamp", "-t", required=True, type=parse_window,
        help="Any instant inside the minute to aggregate (ISO-8601)",
    )
    parser.add_argument(
        "--height", type=int, default=None,
        help="Height to read issuance at (default: last block in the window)",
    )
    args = parser.parse_args(argv)

    init_database()
    logger.info("Starting reward collection", timestamp=args.timestamp.isoformat())

    result = asyncio.run(run(args.timestamp, args.height))

    logger.info(
        "Reward collection complete",
        datetime=result.datetime.isoformat(),
        blocks=result.blocks_in_window,
        entries_upserted=result.entries_upserted,
        denoms=result.denoms,
    )

    if result.warnings:
        for warn in result.warnings:
            logger.warning("aggregation_warning", detail=warn)


if __name__ == "__main__":
    main()
