"""Composite fetch of the treasury tax policy at one height."""

import asyncio

import structlog

from rewardledger.services.lcd_client import LcdClient
from rewardledger.services.schemas.chain import TaxPolicy

logger = structlog.get_logger(__name__)


async def fetch_tax_policy(lcd: LcdClient, height: int) -> TaxPolicy:
    """Fetch rate, caps, treasury params and exemption list concurrently.

    Any failing call aborts the whole snapshot.
    """
    str_height = str(height)
    tax_rate, tax_caps, treasury_params, exemption_list = await asyncio.gather(
        lcd.get_tax_rate(str_height),
        lcd.get_tax_caps(str_height),
        lcd.get_treasury_params(str_height),
        lcd.get_tax_exemption_list(str_height),
    )

    policy = TaxPolicy(
        rate=tax_rate,
        policy_cap=treasury_params["tax_policy"]["cap"]["amount"],
        as_of_height=height,
        caps={cap["denom"]: cap["tax_cap"] for cap in tax_caps},
        exemption_list=frozenset(exemption_list),
    )
    logger.debug(
        "Fetched tax policy",
        height=height,
        rate=policy.rate,
        caps=len(policy.caps),
        exempt=len(policy.exemption_list),
    )
    return policy
