"""Symbol normalization and market-list shaping."""

from __future__ import annotations

import re
from typing import Any, Dict, List

# BTCUSDT-27DEC24, BTC-27DEC24, ETH-26SEP25 ...
_DATED_RE = re.compile(r"-\d{1,2}[A-Z]{3}\d{2}$")


def canonical_symbol(symbol: str) -> str:
    """Market-data symbol for ``symbol``: XPERP becomes XUSDT, anything else is unchanged."""
    if symbol.endswith("PERP") and len(symbol) > 4:
        return symbol[:-4] + "USDT"
    return symbol


def is_dated_contract(symbol: str) -> bool:
    return bool(_DATED_RE.search(symbol or ""))


def base_asset(symbol: str) -> str:
    """BTCUSDT / BTCPERP -> BTC, 1000PEPEUSDT -> 1000PEPE."""
    if not symbol:
        return ""
    if symbol.endswith("USDT"):
        return symbol[:-4]
    if symbol.endswith("PERP"):
        return symbol[:-4]
    return symbol


def _turnover(item: Dict[str, Any]) -> float:
    try:
        return float(item.get("turnover24h") or 0)
    except (TypeError, ValueError):
        return 0.0


def dedupe_top_markets(tickers: List[Dict[str, Any]], limit: int) -> List[Dict[str, Any]]:
    """One ticker per base asset, ranked by 24h turnover.

    The PERP listing of an asset wins over its USDT listing; between two of the
    same kind the higher turnover wins. Dated contracts are dropped up front.
    """
    ranked = sorted(
        (t for t in tickers if not is_dated_contract(t.get("symbol", ""))),
        key=_turnover,
        reverse=True,
    )

    by_base: Dict[str, Dict[str, Any]] = {}
    for item in ranked:
        sym = item.get("symbol", "")
        base = base_asset(sym) or sym
        existing = by_base.get(base)
        if existing is None:
            by_base[base] = item
            continue
        this_perp = sym.endswith("PERP")
        existing_perp = existing.get("symbol", "").endswith("PERP")
        if this_perp and not existing_perp:
            by_base[base] = item
        elif this_perp == existing_perp and _turnover(item) > _turnover(existing):
            by_base[base] = item

    result = sorted(by_base.values(), key=_turnover, reverse=True)
    return result[: max(0, limit)]


def format_market(item: Dict[str, Any]) -> Dict[str, Any]:
    def num(key: str):
        v = item.get(key)
        try:
            return float(v) if v not in (None, "") else None
        except (TypeError, ValueError):
            return None

    return {
        "symbol": item.get("symbol", ""),
        "lastPrice": num("lastPrice") or 0.0,
        # exchange reports a fraction
        "price24hPcnt": (num("price24hPcnt") or 0.0) * 100,
        "highPrice24h": num("highPrice24h"),
        "lowPrice24h": num("lowPrice24h"),
        "volume24h": num("volume24h") or 0.0,
        "turnover24h": num("turnover24h") or 0.0,
    }
