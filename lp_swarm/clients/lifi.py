"""
Li.Fi bridge client.

API Docs: https://docs.li.fi/li.fi-api/li.fi-api
"""

import asyncio
import time
from typing import Optional

from ..errors import InvalidParamsError, OperationTimeoutError, TransactionError
from ..interfaces import BridgeQuote, BridgeQuoteRequest
from ..retry import POLLING_POLICY
from ..utils import logger, format_tx_hash
from .http_api import get_json

LIFI_API_BASE = "https://li.quest/v1"

FINAL_STATUSES = ("DONE", "FAILED", "INVALID")


def _as_int(value) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, str) and value.startswith("0x"):
        return int(value, 16)
    return int(value)


class LiFiBridgeClient:
    """Quotes cross-chain routes and tracks their delivery."""

    def __init__(self, api_key: Optional[str] = None, integrator: str = "lp-swarm",
                 poll_interval: float = 3.0, sleep=asyncio.sleep):
        self.integrator = integrator
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.headers = {"Accept": "application/json"}
        if api_key:
            self.headers["x-lifi-api-key"] = api_key

    async def fetch_quote(self, request: BridgeQuoteRequest) -> BridgeQuote:
        params = {
            "fromChain": request.from_chain,
            "toChain": request.to_chain,
            "fromToken": request.from_token,
            "toToken": request.to_token,
            "fromAmount": str(request.amount_wei),
            "fromAddress": request.from_address,
            "toAddress": request.to_address,
            "slippage": request.slippage_bps / 10000,
            "integrator": self.integrator,
        }
        data = await get_json(f"{LIFI_API_BASE}/quote", params=params, headers=self.headers,
                              label="lifi quote")

        tx = data.get("transactionRequest")
        if not tx or not tx.get("to"):
            raise InvalidParamsError("Li.Fi quote has no transaction request", context={"quote_id": data.get("id")})

        estimate = data.get("estimate", {})
        quote = BridgeQuote(
            route_id=str(data.get("id", "")),
            tx_target=tx["to"],
            tx_data=tx.get("data", "0x"),
            tx_value_wei=_as_int(tx.get("value")),
            min_amount_out_wei=_as_int(estimate.get("toAmountMin")),
            to_amount_wei=_as_int(estimate.get("toAmount")),
            gas_limit=_as_int(tx.get("gasLimit")) or None,
        )
        logger.info(
            f"Li.Fi route {quote.route_id} via {data.get('tool', '?')}: "
            f"min out {quote.min_amount_out_wei}"
        )
        return quote

    async def get_status(self, tx_hash: str) -> str:
        data = await get_json(
            f"{LIFI_API_BASE}/status", params={"txHash": tx_hash}, headers=self.headers,
            policy=POLLING_POLICY, label="lifi status",
        )
        status = data.get("status", "PENDING")
        if data.get("substatus") == "COMPLETED" and status == "DONE":
            return "DONE"
        return status

    async def wait_until_received(self, route_id: str, tx_hash: str, timeout: float) -> str:
        """Poll until the bridge reports a final status or `timeout` seconds pass."""
        deadline = time.monotonic() + timeout
        status = "PENDING"
        while time.monotonic() < deadline:
            status = await self.get_status(tx_hash)
            if status in FINAL_STATUSES:
                if status != "DONE":
                    raise TransactionError(f"Bridge transfer tx {tx_hash} ended with {status}")
                return status
            logger.debug(f"Bridge {format_tx_hash(tx_hash)} status {status}")
            await self.sleep(self.poll_interval)

        raise OperationTimeoutError(
            f"Bridge transfer tx {tx_hash} (route {route_id}) not delivered within {timeout:.0f}s; "
            f"last status {status}. Check the bridge explorer before retrying.",
            context={"tx_hash": tx_hash, "route_id": route_id},
        )
