"""Shared dataclasses for rewardledger services."""

from rewardledger.services.schemas.chain import Coin, TaxPolicy
from rewardledger.services.schemas.results import AggregationResult, IngestionResult

__all__ = [
    # Chain schemas
    "Coin",
    "TaxPolicy",
    # Result schemas
    "AggregationResult",
    "IngestionResult",
]
