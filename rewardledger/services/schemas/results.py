"""Result dataclasses returned by service operations."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class IngestionResult:
    block_height: int
    txs_requested: int
    txs_fetched: int
    txs_persisted: int
    txs_protected: int
    account_txs_created: int
    errors: list[str] = field(default_factory=list)

    @property
    def txs_dropped(self) -> int:
        return self.txs_requested - self.txs_fetched


@dataclass
class AggregationResult:
    datetime: datetime
    blocks_in_window: int
    entries_upserted: int
    denoms: list[str] = field(default_factory=list)
    swap_fee: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
