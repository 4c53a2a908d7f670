"""
Centralized exchange withdrawals through ccxt.

Exchange-specific failures are mapped onto the bot's error taxonomy so the
caller can tell an empty account from a missing address whitelist entry.
"""

from typing import Any, Dict, Optional

import ccxt.async_support as ccxt

from ..errors import (
    AddressNotWhitelistedError, ConfigurationError, InsufficientFundsError,
    InvalidParamsError, MinimumAmountError, NetworkError, RateLimitedError,
)
from ..interfaces import WithdrawalRequest, WithdrawalResult
from ..retry import API_POLICY, retry_async
from ..utils import logger, format_address


def _map_exchange_error(e: Exception, request: WithdrawalRequest) -> Exception:
    message = str(e)
    lowered = message.lower()
    if isinstance(e, ccxt.InsufficientFunds) or "insufficient" in lowered:
        return InsufficientFundsError(f"Exchange balance too low for {request.amount} {request.token}")
    if isinstance(e, ccxt.InvalidAddress) or "whitelist" in lowered or "white list" in lowered:
        return AddressNotWhitelistedError(
            f"{request.address} is not whitelisted for {request.token} on {request.network}"
        )
    if isinstance(e, (ccxt.RateLimitExceeded, ccxt.DDoSProtection)) or "rate limit" in lowered:
        return RateLimitedError(f"Exchange rate limit: {message[:150]}")
    if "minimum" in lowered or "too small" in lowered:
        return MinimumAmountError(f"Withdrawal below exchange minimum: {message[:150]}")
    if isinstance(e, ccxt.AuthenticationError):
        return ConfigurationError(f"Exchange rejected credentials: {message[:150]}")
    if isinstance(e, ccxt.NetworkError):
        return NetworkError(f"Exchange unreachable: {message[:150]}")
    return InvalidParamsError(f"Exchange rejected withdrawal: {message[:300]}")


class CcxtExchangeClient:
    def __init__(self, exchange_id: str, api_key: Optional[str], api_secret: Optional[str],
                 exchange: Optional[Any] = None):
        if exchange is None:
            if not api_key or not api_secret:
                raise ConfigurationError("Exchange API key and secret are required")
            exchange_class = getattr(ccxt, exchange_id, None)
            if exchange_class is None:
                raise ConfigurationError(f"Unsupported exchange: {exchange_id}")
            exchange = exchange_class({"apiKey": api_key, "secret": api_secret, "enableRateLimit": True})
        self.exchange_id = exchange_id
        self.exchange = exchange

    def _withdraw_params(self, request: WithdrawalRequest) -> Dict[str, Any]:
        params: Dict[str, Any] = {"network": request.network}
        if self.exchange_id == "bybit":
            # Bybit V5 withdraws from the funding or unified account
            params["accountType"] = "FUND,UTA"
        return params

    async def withdraw(self, request: WithdrawalRequest, dry_run: bool = False) -> WithdrawalResult:
        if dry_run:
            logger.info(
                f"[DRY RUN] Would withdraw {request.amount} {request.token} "
                f"to {format_address(request.address)} on {request.network}"
            )
            return WithdrawalResult(withdrawal_id="dry-run", status="DRY_RUN")

        try:
            result = await self.exchange.withdraw(
                code=request.token,
                amount=request.amount,
                address=request.address,
                tag=None,
                params=self._withdraw_params(request),
            )
        except ccxt.BaseError as e:
            raise _map_exchange_error(e, request) from e

        withdrawal = WithdrawalResult(
            withdrawal_id=str(result.get("id") or ""),
            status=str(result.get("status") or "pending"),
            tx_hash=result.get("txid"),
        )
        logger.info(
            f"Withdrawal {withdrawal.withdrawal_id} submitted: {request.amount} {request.token} "
            f"to {format_address(request.address)}"
        )
        return withdrawal

    async def get_balance(self, token: str) -> float:
        async def fetch() -> float:
            try:
                balance = await self.exchange.fetch_balance()
            except ccxt.NetworkError as e:
                raise NetworkError(f"Exchange unreachable: {e}") from e
            return float((balance.get("free") or {}).get(token) or 0)

        return await retry_async(fetch, API_POLICY, label=f"{self.exchange_id} balance")

    async def close(self) -> None:
        await self.exchange.close()


async def withdraw_to_hub(exchange, hub_address: str, amount: float, token: str, network: str,
                          dry_run: bool = False) -> WithdrawalResult:
    """Check the exchange balance, then withdraw `amount` to the hub."""
    available = await exchange.get_balance(token)
    if available < amount:
        raise InsufficientFundsError(
            f"Exchange holds {available} {token}, withdrawal needs {amount}",
            context={"available": available, "amount": amount},
        )
    return await exchange.withdraw(
        WithdrawalRequest(token=token, amount=amount, address=hub_address, network=network),
        dry_run=dry_run,
    )
