"""Reference price lookup and USD valuation."""

from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from db.models import Prices
from rewardledger.services._helpers import iso_utc
from rewardledger.services.constants import BOND_DENOM, REFERENCE_DENOM
from rewardledger.services.decimal_math import DenomMap, div, is_zero, mul

logger = structlog.get_logger(__name__)


def has_usd_price(denom: str, prices: DenomMap) -> bool:
    def _usable(d: str) -> bool:
        return d in prices and not is_zero(prices[d])

    return _usable(REFERENCE_DENOM) and (denom == BOND_DENOM or _usable(denom))


def get_usd_value(denom: str, amount: str, prices: DenomMap) -> str:
    """Value ``amount`` of ``denom`` in uusd; "0" when the needed prices are missing.

    ``prices[d]`` is the price of one uluna expressed in ``d``.
    """
    if not has_usd_price(denom, prices):
        return "0"
    if denom == REFERENCE_DENOM:
        return amount
    if denom == BOND_DENOM:
        return mul(prices[REFERENCE_DENOM], amount)
    return div(mul(amount, prices[REFERENCE_DENOM]), prices[denom])


class PriceService:
    """Reads the oracle price table."""

    def __init__(self, session: Session):
        self.session = session

    def active_prices_as_of(self, at: datetime) -> DenomMap:
        stmt = select(Prices).where(Prices.datetime == iso_utc(at))
        prices = {p.denom: p.price for p in self.session.scalars(stmt).all()}
        if prices and REFERENCE_DENOM not in prices:
            logger.warning("No reference price", datetime=iso_utc(at), denoms=sorted(prices))
        return prices
