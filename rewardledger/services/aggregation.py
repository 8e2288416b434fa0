"""Aggregation service for per-minute reward ledger rows.

Only the issuance lookup goes to the chain. The fee sums and the price table
are read afterwards on the same synchronous Session, so the three inputs are
gathered one after another rather than awaited together.
"""

import re
from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session

from config import Settings, get_settings
from db.connection import dialect_insert
from db.models import Blocks, Rewards, Txs
from rewardledger.services._helpers import iso_utc, load_json, minute_window, new_id, now_iso
from rewardledger.services.decimal_math import (
    DenomMap,
    add,
    clamp_to_zero,
    is_zero,
    merge_denom_maps,
    sub,
)
from rewardledger.services.errors import AggregationError
from rewardledger.services.lcd_client import LcdClient
from rewardledger.services.price_service import PriceService, get_usd_value, has_usd_price
from rewardledger.services.schemas.results import AggregationResult

logger = structlog.get_logger(__name__)

_COIN_RE = re.compile(r"^(\d+(?:\.\d+)?)([a-zA-Z][a-zA-Z0-9/:._-]*)$")


def split_denom_and_amount(coin: str) -> tuple[str, str]:
    """Split ``"123.4uusd"`` into ``("uusd", "123.4")``."""
    match = _COIN_RE.match(coin.strip())
    if not match:
        raise AggregationError(f"Malformed coin string: {coin!r}")
    return match.group(2), match.group(1)


def _add_coin(acc: DenomMap, coin: str) -> None:
    denom, amount = split_denom_and_amount(coin)
    acc[denom] = add(acc.get(denom, "0"), amount)


def extract_gas_fee(data: dict[str, Any]) -> DenomMap:
    gas: DenomMap = {}
    for coin in data["tx"]["value"]["fee"]["amount"]:
        gas[coin["denom"]] = add(gas.get(coin["denom"], "0"), coin["amount"])
    return gas


def extract_tax(data: dict[str, Any]) -> DenomMap:
    tax: DenomMap = {}
    for log in data.get("logs") or []:
        annotation = log.get("log")
        taxes = annotation.get("tax") if isinstance(annotation, dict) else None
        if taxes:
            for coin in taxes.split(","):
                _add_coin(tax, coin)
    return tax


def extract_swap_fee(data: dict[str, Any]) -> DenomMap:
    swap_fee: DenomMap = {}
    for log in data.get("logs") or []:
        for event in log.get("events") or []:
            if event.get("type") != "swap":
                continue
            attr = next(
                (a for a in event.get("attributes") or [] if a.get("key") == "swap_fee"),
                None,
            )
            if attr and attr.get("value"):
                _add_coin(swap_fee, attr["value"])
    return swap_fee


class RewardAggregationService:
    """Folds one minute of blocks and transactions into reward ledger rows."""

    def __init__(
        self,
        session: Session,
        lcd_client: Optional[LcdClient] = None,
        price_service: Optional[PriceService] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session: Session = session
        self.lcd_client: LcdClient = lcd_client or LcdClient()
        self.price_service: PriceService = price_service or PriceService(session)
        self.settings: Settings = settings or get_settings()

    @property
    def chain_id(self) -> str:
        return self.settings.chain.chain_id

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    def _get_window_blocks(self, start: datetime, end: datetime) -> list[Blocks]:
        stmt: Select[tuple[Blocks]] = (
            select(Blocks)
            .where(
                and_(
                    Blocks.chain_id == self.chain_id,
                    Blocks.timestamp >= iso_utc(start),
                    Blocks.timestamp < iso_utc(end),
                )
            )
            .order_by(Blocks.height)
        )
        return list(self.session.scalars(stmt).all())

    def _get_block(self, height: int) -> Blocks | None:
        stmt: Select[tuple[Blocks]] = select(Blocks).where(
            and_(Blocks.chain_id == self.chain_id, Blocks.height == height)
        )
        return self.session.scalar(stmt)

    def get_rewards(self, start: datetime, end: datetime) -> tuple[DenomMap, DenomMap, list[Blocks]]:
        """Reward and commission sums for the window, plus the blocks counted.

        A block records the proposer reward of its predecessor, so the window's
        first block is dropped and the block right after the window is added.
        """
        blocks = self._get_window_blocks(start, end)
        if not blocks:
            return {}, {}, []

        following = self._get_block(blocks[-1].height + 1)
        counted = blocks[1:] + ([following] if following else [])

        reward = merge_denom_maps(*(load_json(b.reward) or {} for b in counted))
        commission = merge_denom_maps(*(load_json(b.commission) or {} for b in counted))
        return reward, commission, blocks

    def query_fees(self, start: datetime, end: datetime) -> dict[str, DenomMap]:
        stmt = select(Txs.data).where(
            and_(
                Txs.chain_id == self.chain_id,
                Txs.timestamp >= iso_utc(start),
                Txs.timestamp < iso_utc(end),
            )
        )
        gas: list[DenomMap] = []
        tax: list[DenomMap] = []
        swap_fee: list[DenomMap] = []
        for raw in self.session.scalars(stmt).all():
            data = load_json(raw) or {}
            if data.get("code"):
                continue
            gas.append(extract_gas_fee(data))
            tax.append(extract_tax(data))
            swap_fee.append(extract_swap_fee(data))
        return {
            "gas": merge_denom_maps(*gas),
            "tax": merge_denom_maps(*tax),
            "swapfee": merge_denom_maps(*swap_fee),
        }

    def _upsert_reward(self, values: dict[str, str]) -> None:
        stmt = dialect_insert(self.session, Rewards).values(id=new_id(), **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Rewards.denom, Rewards.datetime],
            set_={
                column: getattr(stmt.excluded, column)
                for column in values
                if column not in ("denom", "datetime")
            },
        )
        self.session.execute(stmt)

    # ------------------------------------------------------------------
    # Core aggregation
    # ------------------------------------------------------------------

    async def aggregate(
        self, window_timestamp: datetime, height: int | None = None
    ) -> AggregationResult:
        start, end = minute_window(window_timestamp)
        warnings: list[str] = []

        reward_sum, commission, blocks = self.get_rewards(start, end)
        if not blocks:
            warnings.append("No blocks in window")
            return AggregationResult(
                datetime=start, blocks_in_window=0, entries_upserted=0, warnings=warnings
            )

        issuance_height = height if height is not None else blocks[-1].height
        issuances = await self.lcd_client.get_all_active_issuance(str(issuance_height))
        fees = self.query_fees(start, end)
        prices = self.price_service.active_prices_as_of(start)

        datetime_iso = iso_utc(start)
        denoms: list[str] = []
        for denom in issuances:
            total = reward_sum.get(denom)
            if not total or is_zero(total):
                continue

            if not has_usd_price(denom, prices):
                warnings.append(f"Missing price for {denom}; USD values recorded as 0")

            tax = fees["tax"].get(denom, "0")
            gas = fees["gas"].get(denom, "0")
            oracle = clamp_to_zero(sub(sub(total, tax), gas))
            self._upsert_reward(
                {
                    "denom": denom,
                    "datetime": datetime_iso,
                    "tax": tax,
                    "tax_usd": get_usd_value(denom, tax, prices),
                    "gas": gas,
                    "gas_usd": get_usd_value(denom, gas, prices),
                    "sum": total,
                    "commission": commission.get(denom, "0"),
                    "oracle": oracle,
                    "oracle_usd": get_usd_value(denom, oracle, prices),
                    "updated_at": now_iso(),
                }
            )
            denoms.append(denom)

        self.session.flush()
        logger.info(
            "Collected rewards",
            datetime=datetime_iso,
            blocks=len(blocks),
            denoms=denoms,
            swap_fee=fees["swapfee"],
        )
        return AggregationResult(
            datetime=start,
            blocks_in_window=len(blocks),
            entries_upserted=len(denoms),
            denoms=denoms,
            swap_fee=fees["swapfee"],
            warnings=warnings,
        )

    async def aggregate_reward_window(self, timestamp: datetime) -> AggregationResult:
        return await self.aggregate(timestamp)
