"""Prompt builders. Pure string assembly, no I/O."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

from llm_autotrader.constants import (
    DEFAULT_PROPOSAL_SIZE_USDT,
    MAX_PRICE_POINTS,
    MIN_PRICE_POINTS,
    MIN_PROPOSAL_CONFIDENCE,
    PROMPT_CHAR_BUDGET,
    PROMPT_CHARS_PER_POINT,
    PROMPT_FIXED_OVERHEAD,
    PROMPT_PER_POSITION_CHARS,
)
from llm_autotrader.core.config import TradingSettings
from llm_autotrader.exchange.models import Position

PROMPT_VERSION = "manage-v2"

PROPOSALS_SYSTEM = "You output only valid JSON arrays."
DECISIONS_SYSTEM = (
    "You output only valid JSON arrays with concise risk-aware decisions. "
    "Base your analysis on the provided price history."
)
ANALYSIS_SYSTEM = (
    "You are a professional cryptocurrency trading analyst. Analyze market data and "
    "provide trading signals (BUY, SELL, or HOLD) with confidence level and reasoning."
)
HEALTH_SYSTEM = (
    "You are a health-check endpoint for an application. Reply with a short JSON object only."
)
HEALTH_USER = 'Return JSON: {"ok": true}'

FEE_NOTE = "fees about 0.06% per side; avoid tiny-edge trades that fees would eat"

DECISION_FORMAT = (
    '[{"symbol":"X","action":"...","confidence":0-100,"reason":"...",'
    '"risk":"low|medium|high","close_fraction":0.3,"average_size_usdt":10,'
    '"checks":{"pnl_positive":true,"trend":"up|down|flat","averaging_allowed":false}}]'
)


def price_points_for(position_count: int) -> int:
    """Closes per position that fit the prompt budget, clamped to [5, 30]."""
    if position_count <= 0:
        return MAX_PRICE_POINTS
    available = max(
        0,
        PROMPT_CHAR_BUDGET - PROMPT_FIXED_OVERHEAD - position_count * PROMPT_PER_POSITION_CHARS,
    )
    points = available // (position_count * PROMPT_CHARS_PER_POINT)
    return max(MIN_PRICE_POINTS, min(MAX_PRICE_POINTS, points))


def _num(v: Any) -> str:
    try:
        text = f"{float(v):.8f}"
    except (TypeError, ValueError):
        return str(v)
    return text.rstrip("0").rstrip(".") or "0"


def _position_header(p: Position) -> str:
    return (
        f"{p.symbol} side={p.side} size={_num(p.size)} entry={_num(p.entry_price)} "
        f"mark={_num(p.mark_price)} pnl={_num(p.unrealized_pnl)} lev={_num(p.leverage)}x"
    )


def _averaged_text(averaged: Iterable[str]) -> str:
    names = sorted(set(averaged))
    return ", ".join(names) if names else "none"


def build_decisions_prompt(
    positions: Sequence[Position],
    history_text: str,
    averaged_symbols: Iterable[str],
    timeframe: Optional[int] = None,
) -> str:
    """Management prompt; drops price history if the full version exceeds the budget."""
    averaged = _averaged_text(averaged_symbols)
    tf = timeframe or next((p.timeframe for p in positions if p.timeframe), None)
    tf_label = f"{tf}min" if tf else "unknown"
    count = len(positions)

    lines = []
    for p in positions:
        lines.append(
            f"{_position_header(p)} opened={p.opened_at}\n"
            f"  market_hist({tf_label}): {p.price_history or 'no market history'}"
        )

    prompt = (
        f"TRADING TIMEFRAME: {tf_label}. Use the market price history on this timeframe "
        f"to assess trend and momentum.\n"
        f"Price history = real market prices (not position prices). If history is short "
        f"or missing, note the uncertainty in your decision.\n\n"
        f"OPEN POSITIONS ({count}):\n" + "\n".join(lines) + "\n\n"
        f"BOT HISTORY (last 7 days):\n{history_text}\n"
        f"Averaged in last 7 days: {averaged}.\n\n"
        f"For EACH position pick ONE action: CLOSE_FULL | CLOSE_PARTIAL | "
        f"MOVE_STOP_TO_BREAKEVEN | AVERAGE_IN_ONCE | DO_NOTHING\n"
        f"Rules: {FEE_NOTE}; only AVERAGE_IN_ONCE if the symbol is not in the averaged "
        f"list and the edge is strong; CLOSE_PARTIAL close_fraction 0.1-0.5.\n"
        f"Return a JSON array, one object per position in the same order: {DECISION_FORMAT}\n"
        f"Every object needs symbol, action, confidence, reason, risk and checks. "
        f"Omit unused parameters. No other text."
    )
    if len(prompt) <= PROMPT_CHAR_BUDGET:
        return prompt

    compact = "\n".join(_position_header(p) for p in positions)
    return (
        f"TRADING TIMEFRAME: {tf_label}. Market price history omitted (too many positions). "
        f"Decide from the position fields alone.\n\n"
        f"OPEN POSITIONS ({count}):\n{compact}\n\n"
        f"BOT HISTORY:\n{history_text}\n"
        f"Averaged: {averaged}.\n\n"
        f"For EACH position pick ONE action: CLOSE_FULL|CLOSE_PARTIAL|"
        f"MOVE_STOP_TO_BREAKEVEN|AVERAGE_IN_ONCE|DO_NOTHING\n"
        f"Rules: {FEE_NOTE}; CLOSE_PARTIAL close_fraction 0.1-0.5.\n"
        f"Return JSON array: {DECISION_FORMAT} No other text."
    )


def build_proposals_prompt(
    markets: Sequence[Dict[str, Any]],
    history_text: str,
    trading: TradingSettings,
) -> str:
    min_lev = max(1, int(trading.min_leverage))
    max_lev = max(min_lev, int(trading.max_leverage))

    lines = [
        f"{m.get('symbol', '')}: price={_num(m.get('lastPrice', 0))} "
        f"24h%={round(float(m.get('price24hPcnt') or 0), 2)} volume={_num(m.get('volume24h', 0))}"
        for m in markets
    ]
    return (
        "You are a professional crypto analyst. Below are top symbols with 24h data.\n\n"
        + "\n".join(lines)
        + "\n\nRecent bot performance summary (use this to avoid repeating mistakes and to "
        "reinforce successful patterns):\n"
        + history_text
        + "\n\n"
        f"Pick the best 5-10 trading opportunities (BUY or SELL only; skip HOLD). "
        f"Confidence must be >= {MIN_PROPOSAL_CONFIDENCE}. Assume {FEE_NOTE}.\n"
        f"Default position size: {_num(DEFAULT_PROPOSAL_SIZE_USDT)} USDT. Leverage between "
        f"{min_lev}x and {max_lev}x. Aggressiveness: {trading.aggressiveness}.\n\n"
        'Return a JSON array of objects, each: {"symbol": "SYMBOL", "signal": "BUY|SELL", '
        '"confidence": <0-100>, "reason": "...", "position_size_usdt": <number>, '
        '"leverage": <integer>}. No other text, only the JSON array.'
    )


def build_analysis_prompt(symbol: str, market: Dict[str, Any], trading: TradingSettings) -> str:
    min_lev = max(1, int(trading.min_leverage))
    max_lev = max(min_lev, int(trading.max_leverage))
    max_usdt = _num(trading.max_position_usdt)

    def money(key: str, decimals: int = 2) -> str:
        return f"{float(market.get(key) or 0):,.{decimals}f}"

    parts: List[str] = [
        f"You are a professional cryptocurrency trading analyst and risk manager. "
        f"Analyze the market for {symbol} and provide a trading recommendation.\n"
    ]
    if market:
        parts.append("Current market data:")
        parts.append(f"- Symbol: {market.get('symbol', symbol)}")
        parts.append(f"- Last Price: ${money('lastPrice')}")
        parts.append(f"- 24h Change: {money('price24hPcnt')}%")
        parts.append(f"- 24h Volume: {money('volume24h', 0)}")
        parts.append(f"- 24h Turnover: ${money('turnover24h', 0)}")
        for key, label in (
            ("highPrice24h", "24h High"),
            ("lowPrice24h", "24h Low"),
            ("prevPrice24h", "Previous Close"),
        ):
            if market.get(key) is not None:
                parts.append(f"- {label}: ${money(key)}")
    parts.append(
        "\nAnalyze: 1. price trend and momentum 2. volume 3. market sentiment 4. risk.\n"
    )
    parts.append("Risk and trading constraints:")
    parts.append(f"- Max position size per trade: {max_usdt} USDT")
    parts.append(f"- Allowed leverage range: from {min_lev}x to {max_lev}x")
    parts.append(
        f"- Aggressiveness level: {trading.aggressiveness} (conservative = small size and low "
        f"leverage, balanced = medium, aggressive = closer to limits)\n"
    )
    parts.append(
        'Respond ONLY with valid JSON in this exact format:\n'
        '{"signal": "BUY|SELL|HOLD", "confidence": <number 0-100>, "reason": "<2-3 sentences>", '
        f'"position_size_usdt": <0..{max_usdt}>, "leverage": <integer {min_lev}..{max_lev}>}}\n'
        "Do not include any text before or after the JSON."
    )
    return "\n".join(parts)
