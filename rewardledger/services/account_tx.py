"""Account index derivation and payload sanitization for stored transactions."""

import base64
from typing import Any

from db.models import AccountTxs, Txs
from rewardledger.services._helpers import new_id
from rewardledger.services.constants import TERRA_ACCOUNT_REGEX


def _has_non_ascii(value: str) -> bool:
    return any(ord(ch) > 0x7F for ch in value)


def sanitize_tx(data: Any) -> Any:
    """Base64-encode, in place, every string holding a non-ASCII code point.

    Walks the payload with an explicit stack, so nesting depth is not bounded
    by the interpreter's recursion limit. Dict keys are left untouched.
    """
    stack: list[Any] = [data]
    while stack:
        node = stack.pop()
        if isinstance(node, dict):
            items = node.items()
        elif isinstance(node, list):
            items = enumerate(node)
        else:
            continue
        for key, value in list(items):
            if isinstance(value, (dict, list)):
                stack.append(value)
            elif isinstance(value, str) and _has_non_ascii(value):
                node[key] = base64.b64encode(value.encode("utf-8")).decode("ascii")
    return data


def collect_accounts(data: Any) -> list[str]:
    """Distinct account addresses referenced anywhere in a payload, in walk order."""
    seen: dict[str, None] = {}
    stack: list[Any] = [data]
    while stack:
        node = stack.pop()
        if isinstance(node, dict):
            stack.extend(reversed(list(node.values())))
        elif isinstance(node, list):
            stack.extend(reversed(node))
        elif isinstance(node, str) and TERRA_ACCOUNT_REGEX.match(node):
            seen.setdefault(node, None)
    return list(seen)


def generate_account_txs(tx: Txs, data: dict[str, Any]) -> list[AccountTxs]:
    return [
        AccountTxs(
            id=new_id(),
            account=account,
            chain_id=tx.chain_id,
            hash=tx.hash,
            tx_id=tx.id,
            timestamp=tx.timestamp,
        )
        for account in collect_accounts(data)
    ]
