"""Shared fixtures: in-memory SQLite DB with all tables, plus a fake LCD client."""

import copy
from collections.abc import Generator
from datetime import datetime
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import ChainSettings, Settings
from db.models import Base, Blocks
from rewardledger.services._helpers import dump_json, iso_utc, new_id
from rewardledger.services.decimal_math import DenomMap
from rewardledger.services.errors import TxNotFoundError

CHAIN_ID: str = "columbus-5"
ACCOUNT_A: str = "terra1" + "a" * 38
ACCOUNT_B: str = "terra1" + "b" * 38


class FakeLcdClient:
    """In-memory stand-in for LcdClient with the same async surface."""

    def __init__(
        self,
        txs: dict[str, dict[str, Any]] | None = None,
        tax_rate: str = "0.002",
        tax_caps: list[dict[str, str]] | None = None,
        policy_cap: str = "1000000",
        exemption_list: list[str] | None = None,
        issuance: DenomMap | None = None,
    ) -> None:
        self.txs: dict[str, dict[str, Any]] = txs or {}
        self.tax_rate = tax_rate
        self.tax_caps = tax_caps if tax_caps is not None else [{"denom": "uusd", "tax_cap": "1000"}]
        self.policy_cap = policy_cap
        self.exemption_list = exemption_list or []
        self.issuance = issuance or {}
        self.calls: list[tuple[str, object]] = []

    async def get_tx(self, tx_hash: str) -> dict[str, Any]:
        self.calls.append(("get_tx", tx_hash))
        if tx_hash not in self.txs:
            raise TxNotFoundError(f"Transaction {tx_hash} not found")
        return copy.deepcopy(self.txs[tx_hash])

    async def get_tax_rate(self, height: int | str) -> str:
        self.calls.append(("get_tax_rate", height))
        return self.tax_rate

    async def get_tax_caps(self, height: int | str) -> list[dict[str, str]]:
        self.calls.append(("get_tax_caps", height))
        return self.tax_caps

    async def get_treasury_params(self, height: int | str) -> dict[str, Any]:
        self.calls.append(("get_treasury_params", height))
        return {"tax_policy": {"cap": {"denom": "usdr", "amount": self.policy_cap}}}

    async def get_tax_exemption_list(self, height: int | str) -> list[str]:
        self.calls.append(("get_tax_exemption_list", height))
        return self.exemption_list

    async def get_all_active_issuance(self, height: int | str) -> DenomMap:
        self.calls.append(("get_all_active_issuance", height))
        return dict(self.issuance)


def make_tx(
    tx_hash: str,
    height: int = 5_000_000,
    msgs: list[dict[str, Any]] | None = None,
    fee: list[dict[str, str]] | None = None,
    code: int | None = None,
    timestamp: str = "2021-10-01T00:00:05Z",
    events: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """LCD-shaped transaction with one log per message."""
    if msgs is None:
        msgs = [
            {
                "type": "bank/MsgSend",
                "value": {
                    "from_address": ACCOUNT_A,
                    "to_address": ACCOUNT_B,
                    "amount": [{"denom": "uusd", "amount": "10000"}],
                },
            }
        ]
    tx: dict[str, Any] = {
        "height": str(height),
        "txhash": tx_hash,
        "timestamp": timestamp,
        "logs": [
            {"msg_index": i, "log": "", "events": events or []} for i in range(len(msgs))
        ],
        "tx": {
            "type": "core/StdTx",
            "value": {
                "fee": {"amount": fee if fee is not None else [{"denom": "uusd", "amount": "1000"}],
                        "gas": "200000"},
                "msg": msgs,
                "memo": "",
            },
        },
    }
    if code is not None:
        tx["code"] = code
        tx["logs"] = []
    return tx


def seed_block(
    session: Session,
    height: int,
    ts: datetime,
    reward: DenomMap | None = None,
    commission: DenomMap | None = None,
    chain_id: str = CHAIN_ID,
) -> Blocks:
    block: Blocks = Blocks(
        id=new_id(),
        chain_id=chain_id,
        height=height,
        timestamp=iso_utc(ts),
        reward=dump_json(reward or {}),
        commission=dump_json(commission or {}),
    )
    session.add(block)
    session.flush()
    return block


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    eng: Engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine: Engine) -> Generator[Session, None, None]:
    factory: sessionmaker[Session] = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    sess: Session = factory()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path,
        account_tx_chunk_size=5000,
        chain=ChainSettings(chain_id=CHAIN_ID, retry_delay=0.0, max_concurrency=4),
    )
