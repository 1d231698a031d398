"""
stable-channels modules package

This package contains the core modules for the Stable Channels plugin:
- amounts: Bitcoin and USD value types
- price_feeds: Median BTC/USD price from several exchanges
- stability: Peg state and the stability controller
- lightning_node: lightningd channel listing and keysend payments
- config: Configuration and constants
- database: SQLite storage layer
"""

from .amounts import Bitcoin, USD
from .price_feeds import PriceFeed, PriceFeedAggregator, PriceSample, PRICE_UNAVAILABLE
from .stability import Action, PaymentOrder, StableChannel, StabilityController, evaluate
from .lightning_node import ChannelSnapshot, LightningNode, PaymentResult
from .config import Config
from .database import Database

__all__ = [
    'Bitcoin',
    'USD',
    'PriceFeed',
    'PriceFeedAggregator',
    'PriceSample',
    'PRICE_UNAVAILABLE',
    'Action',
    'PaymentOrder',
    'StableChannel',
    'StabilityController',
    'evaluate',
    'ChannelSnapshot',
    'LightningNode',
    'PaymentResult',
    'Config',
    'Database'
]
