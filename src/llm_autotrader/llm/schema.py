"""
Strict contracts for model output.

Decisions decode into a tagged union keyed on ``action``. Anything that fails
to decode becomes a ``DoNothing`` carrying the raw payload and a failure
category, so callers always get one well-formed decision per position.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from llm_autotrader.constants import (
    DEFAULT_AVERAGE_SIZE_USDT,
    DEFAULT_PARTIAL_FRACTION,
    DEFAULT_PROPOSAL_SIZE_USDT,
    MIN_PROPOSAL_CONFIDENCE,
)
from llm_autotrader.core.config import TradingSettings

ACTIONS = ("CLOSE_FULL", "CLOSE_PARTIAL", "MOVE_STOP_TO_BREAKEVEN", "AVERAGE_IN_ONCE", "DO_NOTHING")

# Failure categories attached to degraded decisions
UNPARSABLE = "unparsable_response"
MISSING = "missing_decision"
INVALID_ACTION = "invalid_action"
SCHEMA_VIOLATION = "schema_violation"


class DecisionChecks(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pnl_positive: Optional[bool] = None
    trend: Optional[str] = None
    averaging_allowed: Optional[bool] = None


class _DecisionBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    symbol: str = Field(min_length=1)
    confidence: int = Field(ge=0, le=100)
    reason: str
    risk: Literal["low", "medium", "high"]
    checks: DecisionChecks
    prompt_version: Optional[str] = None
    provider: Optional[str] = None

    @field_validator("risk", mode="before")
    @classmethod
    def _lower_risk(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @property
    def trace(self) -> Dict[str, Any]:
        """Fields copied onto every event this decision produces."""
        return {
            "confidence": self.confidence,
            "reason": self.reason,
            "risk": self.risk,
            "checks": self.checks.model_dump(),
            "prompt_version": self.prompt_version,
            "provider": self.provider,
        }


class CloseFull(_DecisionBase):
    action: Literal["CLOSE_FULL"]


class ClosePartial(_DecisionBase):
    action: Literal["CLOSE_PARTIAL"]
    close_fraction: float = Field(default=DEFAULT_PARTIAL_FRACTION, ge=0.1, le=1.0)


class MoveStopToBreakeven(_DecisionBase):
    action: Literal["MOVE_STOP_TO_BREAKEVEN"]


class AverageInOnce(_DecisionBase):
    action: Literal["AVERAGE_IN_ONCE"]
    average_size_usdt: float = Field(default=DEFAULT_AVERAGE_SIZE_USDT, gt=0)


class DoNothing(_DecisionBase):
    action: Literal["DO_NOTHING"]
    raw: Optional[Any] = None
    failure: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.failure is not None


AnyDecision = Union[CloseFull, ClosePartial, MoveStopToBreakeven, AverageInOnce, DoNothing]
Decision = Annotated[AnyDecision, Field(discriminator="action")]
_DECISION = TypeAdapter(Decision)


def degraded_decision(symbol: str, raw: Any, failure: str, provider: Optional[str] = None, prompt_version: Optional[str] = None) -> DoNothing:
    return DoNothing(
        symbol=symbol or "UNKNOWN",
        action="DO_NOTHING",
        confidence=0,
        reason=f"model output rejected: {failure}",
        risk="high",
        checks=DecisionChecks(),
        raw=raw,
        failure=failure,
        provider=provider,
        prompt_version=prompt_version,
    )


class Proposal(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    signal: Literal["BUY", "SELL"]
    confidence: int
    reason: str = ""
    position_size_usdt: float
    leverage: int


def extract_json(content: str, opener: str = "[") -> Any:
    """Decode the span between the first ``opener`` and its last matching closer.

    Raises ValueError when no such span exists or it is not valid JSON.
    """
    closer = {"[": "]", "{": "}"}[opener]
    start = content.find(opener)
    end = content.rfind(closer)
    if start == -1 or end <= start:
        raise ValueError(f"no JSON {opener}{closer} block in model output")
    return json.loads(content[start : end + 1])


def _normalize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: v for k, v in item.items() if k not in ("raw", "failure")}
    if isinstance(out.get("action"), str):
        out["action"] = out["action"].strip().upper()
    # older prompt wording used "note"
    if "reason" not in out and isinstance(out.get("note"), str):
        out["reason"] = out["note"]
    return out


def parse_decisions(
    content: str,
    symbols: Sequence[str],
    *,
    provider: Optional[str] = None,
    prompt_version: Optional[str] = None,
) -> List[AnyDecision]:
    """One decision per symbol, in the order given. Never raises."""
    try:
        payload = extract_json(content, "[")
    except ValueError:
        return [degraded_decision(s, content, UNPARSABLE, provider, prompt_version) for s in symbols]

    by_symbol: Dict[str, Any] = {}
    for item in payload:
        if isinstance(item, dict) and isinstance(item.get("symbol"), str):
            by_symbol.setdefault(item["symbol"], item)

    decisions = []
    for symbol in symbols:
        item = by_symbol.get(symbol)
        if item is None:
            decisions.append(degraded_decision(symbol, None, MISSING, provider, prompt_version))
            continue
        normalized = _normalize_item(item)
        if normalized.get("action") not in ACTIONS:
            decisions.append(degraded_decision(symbol, item, INVALID_ACTION, provider, prompt_version))
            continue
        normalized["provider"] = provider
        normalized["prompt_version"] = prompt_version
        try:
            decisions.append(_DECISION.validate_python(normalized))
        except ValidationError:
            decisions.append(degraded_decision(symbol, item, SCHEMA_VIOLATION, provider, prompt_version))
    return decisions


def parse_proposals(content: str, trading: TradingSettings) -> List[Proposal]:
    """Valid BUY/SELL ideas with confidence >= 60, size and leverage clamped, best first."""
    try:
        payload = extract_json(content, "[")
    except ValueError:
        return []

    min_lev = max(1, int(trading.min_leverage))
    max_lev = max(min_lev, int(trading.max_leverage))
    max_usdt = float(trading.max_position_usdt)

    out: List[Proposal] = []
    for item in payload:
        if not isinstance(item, dict) or not item.get("symbol"):
            continue
        if item.get("signal") not in ("BUY", "SELL"):
            continue
        try:
            confidence = int(item.get("confidence") or 0)
            size = (
                min(max(float(item["position_size_usdt"]), 0.0), max_usdt)
                if item.get("position_size_usdt") is not None
                else DEFAULT_PROPOSAL_SIZE_USDT
            )
            lev = (
                min(max(int(item["leverage"]), min_lev), max_lev)
                if item.get("leverage") is not None
                else min_lev
            )
        except (TypeError, ValueError):
            continue
        if confidence < MIN_PROPOSAL_CONFIDENCE:
            continue
        out.append(
            Proposal(
                symbol=str(item["symbol"]),
                signal=item["signal"],
                confidence=confidence,
                reason=str(item.get("reason") or ""),
                position_size_usdt=size,
                leverage=lev,
            )
        )
    out.sort(key=lambda p: p.confidence, reverse=True)
    return out


def parse_analysis(content: str, symbol: str) -> Dict[str, Any]:
    """Single-symbol BUY/SELL/HOLD signal; falls back to keyword scan."""
    try:
        data = extract_json(content, "{")
    except ValueError:
        data = None
    if isinstance(data, dict) and data:
        signal = str(data.get("signal") or "HOLD").upper()
        try:
            confidence = int(data.get("confidence", 50))
        except (TypeError, ValueError):
            confidence = 50
        return {
            "symbol": symbol,
            "signal": signal if signal in ("BUY", "SELL", "HOLD") else "HOLD",
            "confidence": confidence,
            "reason": str(data.get("reason") or "Analysis completed"),
            "position_size_usdt": _opt_float(data.get("position_size_usdt")),
            "leverage": _opt_int(data.get("leverage")),
        }

    upper = content.upper()
    signal = "HOLD"
    if "BUY" in upper:
        signal = "BUY"
    if "SELL" in upper:
        signal = "SELL"
    return {
        "symbol": symbol,
        "signal": signal,
        "confidence": 70,
        "reason": content[:200],
        "position_size_usdt": None,
        "leverage": None,
    }


def _opt_float(v: Any) -> Optional[float]:
    try:
        return float(v) if v is not None else None
    except (TypeError, ValueError):
        return None


def _opt_int(v: Any) -> Optional[int]:
    try:
        return int(v) if v is not None else None
    except (TypeError, ValueError):
        return None

