"""Stability tax resolution: split a transaction fee into tax and gas.

The fee a Terra transaction pays covers both the stability tax on the coins it
moves and the gas it consumes. ``resolve_tax`` computes the tax owed by every
message under a ``TaxPolicy``, rewrites the fee into the gas-only remainder,
and annotates each message's execution log with the tax it paid so the reward
aggregation can read it back later.
"""

import copy
from collections.abc import Callable
from enum import Enum
from typing import Any, Optional

from rewardledger.services.constants import BOND_DENOM, BURN_TAX_UPGRADE_HEIGHT, LEGACY_CHAIN_ID
from rewardledger.services.decimal_math import add, floor_to_integer, min_amount, mul, sub
from rewardledger.services.errors import AnnotationLengthMismatch, TaxFieldNotFound
from rewardledger.services.schemas.chain import Coin, TaxPolicy

LcdTx = dict[str, Any]
Msg = dict[str, Any]


class MsgType(str, Enum):
    """Message types that can carry taxable coins."""

    SEND = "bank/MsgSend"
    MULTI_SEND = "bank/MsgMultiSend"
    SWAP_SEND = "market/MsgSwapSend"
    INSTANTIATE_CONTRACT = "wasm/MsgInstantiateContract"
    INSTANTIATE_CONTRACT2 = "wasm/MsgInstantiateContract2"
    EXECUTE_CONTRACT = "wasm/MsgExecuteContract"
    EXEC_AUTHORIZED = "msgauth/MsgExecAuthorized"
    AUTHZ_EXEC = "authz/MsgExec"

    @classmethod
    def lookup(cls, tag: object) -> Optional["MsgType"]:
        try:
            return cls(tag)
        except ValueError:
            return None


def _first_present(value: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if value.get(key) is not None:
            return value[key]
    return None


def _send_coins(tx: LcdTx, value: dict[str, Any], policy: TaxPolicy) -> Any:
    if policy.is_exempt_pair(value.get("from_address"), value.get("to_address")):
        return []
    return value.get("amount")


def _multi_send_coins(tx: LcdTx, value: dict[str, Any], policy: TaxPolicy) -> Any:
    inputs = value.get("inputs")
    outputs = value.get("outputs") or []
    if not isinstance(inputs, list):
        return None

    coins: list[Coin] = []
    for i, msg_input in enumerate(inputs):
        if not isinstance(msg_input, dict):
            return None
        output = outputs[i] if i < len(outputs) else None
        recipient = output.get("address") if isinstance(output, dict) else None
        if policy.is_exempt_pair(msg_input.get("address"), recipient):
            continue
        input_coins = msg_input.get("coins")
        if not isinstance(input_coins, list):
            return None
        coins.extend(input_coins)
    return coins


def _swap_send_coins(tx: LcdTx, value: dict[str, Any], policy: TaxPolicy) -> Any:
    offer_coin = value.get("offer_coin")
    return [offer_coin] if offer_coin is not None else None


def _instantiate_coins(tx: LcdTx, value: dict[str, Any], policy: TaxPolicy) -> Any:
    return _first_present(value, "init_coins", "funds")


def _instantiate2_coins(tx: LcdTx, value: dict[str, Any], policy: TaxPolicy) -> Any:
    return value.get("funds")


def _execute_coins(tx: LcdTx, value: dict[str, Any], policy: TaxPolicy) -> Any:
    return _first_present(value, "coins", "funds")


def _exec_coins(tx: LcdTx, value: dict[str, Any], policy: TaxPolicy) -> Any:
    msgs = value.get("msgs")
    if not isinstance(msgs, list):
        return None
    coins: list[Coin] = []
    for inner in msgs:
        coins.extend(get_tax_coins(tx, inner, policy))
    return coins


_EXTRACTORS: dict[MsgType, Callable[[LcdTx, dict[str, Any], TaxPolicy], Any]] = {
    MsgType.SEND: _send_coins,
    MsgType.MULTI_SEND: _multi_send_coins,
    MsgType.SWAP_SEND: _swap_send_coins,
    MsgType.INSTANTIATE_CONTRACT: _instantiate_coins,
    MsgType.INSTANTIATE_CONTRACT2: _instantiate2_coins,
    MsgType.EXECUTE_CONTRACT: _execute_coins,
    MsgType.EXEC_AUTHORIZED: _exec_coins,
    MsgType.AUTHZ_EXEC: _exec_coins,
}


def _field_not_found(tx: LcdTx, tag: object) -> TaxFieldNotFound:
    return TaxFieldNotFound(
        f"cannot find tax field in msg: {tag}, height: {tx.get('height')}, txhash: {tx.get('txhash')}"
    )


def get_tax_coins(tx: LcdTx, msg: Msg, policy: TaxPolicy) -> list[Coin]:
    """Coins a message moves that are subject to tax. Unknown types move none."""
    tag = msg.get("type")
    msg_type = MsgType.lookup(tag)
    if msg_type is None:
        return []

    coins = _EXTRACTORS[msg_type](tx, msg.get("value") or {}, policy)
    if not isinstance(coins, list):
        raise _field_not_found(tx, tag)
    for coin in coins:
        if not isinstance(coin, dict) or "denom" not in coin or "amount" not in coin:
            raise _field_not_found(tx, tag)
    return coins


def _is_untaxed_bond_denom(denom: str, height: int, chain_id: str) -> bool:
    return denom == BOND_DENOM and chain_id == LEGACY_CHAIN_ID and height < BURN_TAX_UPGRADE_HEIGHT


def compute_message_tax(tx: LcdTx, msg: Msg, policy: TaxPolicy, chain_id: str) -> list[Coin]:
    """Tax owed by one message, one entry per denomination."""
    grouped: dict[str, str] = {}
    for coin in get_tax_coins(tx, msg, policy):
        grouped[coin["denom"]] = add(grouped.get(coin["denom"], "0"), coin["amount"])

    height = int(tx["height"])
    taxes: list[Coin] = []
    for denom, amount in grouped.items():
        if _is_untaxed_bond_denom(denom, height, chain_id):
            continue
        tax = min_amount(floor_to_integer(mul(amount, policy.rate)), policy.cap_for(denom))
        taxes.append(Coin(denom=denom, amount=tax))
    return taxes


def resolve_tax(tx: LcdTx, policy: TaxPolicy, chain_id: str) -> LcdTx:
    """Return a copy of ``tx`` with a gas-only fee and tax-annotated logs.

    Failed transactions and transactions without logs are returned as-is.
    """
    if tx.get("code") or not tx.get("logs"):
        return tx

    resolved = copy.deepcopy(tx)
    tx_value = resolved["tx"]["value"]
    fee: dict[str, str] = {coin["denom"]: coin["amount"] for coin in tx_value["fee"]["amount"]}
    logs: list[dict[str, Any]] = resolved["logs"]

    tax_per_msg: list[list[str]] = []
    for msg in tx_value["msg"]:
        entries: list[str] = []
        for tax in compute_message_tax(resolved, msg, policy, chain_id):
            denom, amount = tax["denom"], tax["amount"]
            if denom in fee:
                fee[denom] = sub(fee[denom], amount)
                if fee[denom] == "0":
                    del fee[denom]
            entries.append(f"{amount}{denom}")
        tax_per_msg.append(entries)

    if len(logs) != len(tax_per_msg):
        raise AnnotationLengthMismatch(
            f"logs and tax array length must be equal: {len(logs)} != {len(tax_per_msg)}, "
            f"txhash: {tx.get('txhash')}"
        )

    tx_value["fee"]["amount"] = [Coin(denom=denom, amount=amount) for denom, amount in fee.items()]
    for log, entries in zip(logs, tax_per_msg):
        if entries:
            log["log"] = {"tax": ",".join(entries)}
    return resolved
