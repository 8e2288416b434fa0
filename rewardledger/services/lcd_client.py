"""LCD (REST) client for fetching transactions and treasury state from the chain."""

import asyncio
from typing import Any, Optional

import httpx
import structlog

from config import get_settings
from rewardledger.services.decimal_math import DenomMap, is_zero
from rewardledger.services.errors import (
    ChainConnectionError,
    NotFoundError,
    RPCError,
    TxNotFoundError,
)
from rewardledger.services.schemas.chain import Coin

logger = structlog.get_logger(__name__)

HEIGHT_HEADER = "x-cosmos-block-height"
PAGE_LIMIT = 1000


class LcdClient:
    """Async client for a Cosmos-SDK LCD endpoint of a Terra chain."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.chain.lcd_url).rstrip("/")
        self.timeout = timeout or settings.chain.rpc_timeout
        self.retry_attempts = retry_attempts or settings.chain.retry_attempts
        self.retry_delay = settings.chain.retry_delay if retry_delay is None else retry_delay
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "LcdClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _get(
        self,
        path: str,
        height: int | str | None = None,
        params: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        headers = {HEIGHT_HEADER: str(height)} if height is not None else None
        last_error: Exception | None = None

        for attempt in range(self.retry_attempts):
            try:
                response = await self._client.get(path, params=params, headers=headers)
                if response.status_code == 404:
                    raise NotFoundError(f"Not found: {path}")
                response.raise_for_status()
                body = response.json()
                if not isinstance(body, dict):
                    raise RPCError(f"Unexpected response shape from {path}")
                return body
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status < 500 and status != 429:
                    raise RPCError(f"HTTP {status} for {path}: {e.response.text[:200]}") from e
                last_error = e
            except httpx.ConnectError as e:
                last_error = ChainConnectionError(f"Failed to connect to {self.base_url}: {e}")
            except httpx.RequestError as e:
                last_error = e

            logger.warning(
                "LCD call failed, retrying",
                path=path,
                attempt=attempt + 1,
                error=str(last_error)[:100],
            )
            if attempt < self.retry_attempts - 1:
                await asyncio.sleep(self.retry_delay * (attempt + 1))

        if isinstance(last_error, ChainConnectionError):
            raise last_error
        raise RPCError(f"LCD call failed after {self.retry_attempts} attempts: {last_error}")

    async def _get_paginated(
        self, path: str, key: str, height: int | str | None = None
    ) -> list[Any]:
        items: list[Any] = []
        next_key: str | None = None
        while True:
            params: dict[str, Any] = {"pagination.limit": PAGE_LIMIT}
            if next_key:
                params["pagination.key"] = next_key
            body = await self._get(path, height=height, params=params)
            items.extend(body.get(key) or [])
            next_key = (body.get("pagination") or {}).get("next_key")
            if not next_key:
                return items

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def get_tx(self, tx_hash: str) -> dict[str, Any]:
        try:
            return await self._get(f"/txs/{tx_hash}")
        except NotFoundError as e:
            raise TxNotFoundError(f"Transaction {tx_hash} not found") from e

    # ------------------------------------------------------------------
    # Treasury
    # ------------------------------------------------------------------

    async def get_tax_rate(self, height: int | str) -> str:
        body = await self._get("/terra/treasury/v1beta1/tax_rate", height=height)
        return str(body["tax_rate"])

    async def get_tax_caps(self, height: int | str) -> list[dict[str, str]]:
        body = await self._get("/terra/treasury/v1beta1/tax_caps", height=height)
        return list(body.get("tax_caps") or [])

    async def get_treasury_params(self, height: int | str) -> dict[str, Any]:
        body = await self._get("/terra/treasury/v1beta1/params", height=height)
        return dict(body["params"])

    async def get_tax_exemption_list(self, height: int | str) -> list[str]:
        return await self._get_paginated(
            "/terra/treasury/v1beta1/burn_tax_exemption_list", "addresses", height=height
        )

    # ------------------------------------------------------------------
    # Supply
    # ------------------------------------------------------------------

    async def get_total_supply(self, height: int | str | None = None) -> list[Coin]:
        return await self._get_paginated("/cosmos/bank/v1beta1/supply", "supply", height=height)

    async def get_all_active_issuance(self, height: int | str) -> DenomMap:
        supply = await self.get_total_supply(height)
        return {
            coin["denom"]: coin["amount"]
            for coin in supply
            if not coin["denom"].startswith("ibc/") and not is_zero(coin["amount"])
        }
