"""
dex/adapters/ - Venue-specific quoting adapters.

Adapters:
- uniswap_v3: Uniswap V3 Quoter V1 adapter with fee-tier search
- quickswap: QuickSwap V2 router adapter with reserve-based price impact
"""

from dex.adapters.base import PoolCache, VenueAdapter
from dex.adapters.quickswap import QuickSwapAdapter
from dex.adapters.uniswap_v3 import UniswapV3Adapter

__all__ = [
    "PoolCache",
    "QuickSwapAdapter",
    "UniswapV3Adapter",
    "VenueAdapter",
]
