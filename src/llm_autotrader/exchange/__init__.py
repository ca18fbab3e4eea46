"""Bybit v5 linear-perpetuals access."""

from .client import BybitClient, QTY_VALIDATION_CODES, clamp_leverage, round_to_step
from .models import Instrument, OrderResult, Position
from .symbols import base_asset, canonical_symbol, is_dated_contract

__all__ = [
    "BybitClient",
    "QTY_VALIDATION_CODES",
    "clamp_leverage",
    "round_to_step",
    "Instrument",
    "OrderResult",
    "Position",
    "base_asset",
    "canonical_symbol",
    "is_dated_contract",
]
