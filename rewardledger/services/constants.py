"""Chain constants shared by the tax and reward services."""

import re

BOND_DENOM = "uluna"
REFERENCE_DENOM = "uusd"

# Luna became taxable on columbus-5 at the burn tax upgrade
LEGACY_CHAIN_ID = "columbus-5"
BURN_TAX_UPGRADE_HEIGHT = 9_346_889

TERRA_ACCOUNT_REGEX = re.compile(r"^terra1(?:[a-z0-9]{38}|[a-z0-9]{58})$")
