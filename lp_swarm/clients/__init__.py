"""
Concrete collaborators: bridge, swap, pool and exchange clients.
"""

from .lifi import LiFiBridgeClient
from .zerox import ZeroXSwapClient
from .uniswap_v3 import UniswapV3PoolClient
from .exchange import CcxtExchangeClient, withdraw_to_hub

__all__ = [
    "LiFiBridgeClient",
    "ZeroXSwapClient",
    "UniswapV3PoolClient",
    "CcxtExchangeClient",
    "withdraw_to_hub",
]
