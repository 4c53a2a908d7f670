"""
0x Aggregator swap quotes (API v2, allowance-holder flow).

API Docs: https://0x.org/docs/0x-swap-api/introduction
"""

from typing import Optional

from ..errors import InvalidParamsError
from ..interfaces import SwapQuote, SwapQuoteRequest
from ..utils import logger
from .http_api import get_json

ZEROX_API_BASE = "https://api.0x.org"


class ZeroXSwapClient:
    def __init__(self, chain_id: int, api_key: Optional[str] = None):
        self.chain_id = chain_id
        # v2 API requires version header
        self.headers = {"Accept": "application/json", "0x-version": "v2"}
        if api_key:
            self.headers["0x-api-key"] = api_key

    async def fetch_quote(self, request: SwapQuoteRequest) -> SwapQuote:
        params = {
            "chainId": self.chain_id,
            "sellToken": request.token_in,
            "buyToken": request.token_out,
            "sellAmount": str(request.amount_wei),
            "slippageBps": str(request.slippage_bps),
            "taker": request.taker,
        }
        data = await get_json(f"{ZEROX_API_BASE}/swap/allowance-holder/quote", params=params,
                              headers=self.headers, label="0x quote")

        if not data.get("liquidityAvailable", True):
            raise InvalidParamsError(f"No liquidity for {request.token_in} -> {request.token_out}")
        tx = data.get("transaction") or {}
        if not tx.get("to"):
            raise InvalidParamsError("0x quote has no transaction")

        issues = data.get("issues") or {}
        allowance = issues.get("allowance") or {}
        if issues.get("balance"):
            logger.warning(f"0x reports balance issue: {issues['balance']}")

        return SwapQuote(
            target=tx["to"],
            calldata=tx.get("data", "0x"),
            value_wei=int(tx.get("value") or 0),
            min_amount_out_wei=int(data.get("minBuyAmount") or 0),
            allowance_target=allowance.get("spender"),
            gas_limit=int(tx["gas"]) if tx.get("gas") else None,
        )
