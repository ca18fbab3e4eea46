"""
Model-backed trading decisions.

Builds prompts, asks the provider chain, and turns the reply into contract
objects. Nothing here raises on bad model output: broken replies become
degraded DO_NOTHING decisions, and a chain where every provider failed yields
an empty list plus an alert.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from llm_autotrader.constants import HISTORY_SUMMARY_DAYS
from llm_autotrader.core.config import Settings
from llm_autotrader.core.logger import logger
from llm_autotrader.exchange import BybitClient, Position
from llm_autotrader.resilience import LLMProviderError
from llm_autotrader.storage import EventLog

from .prompts import (
    ANALYSIS_SYSTEM,
    DECISIONS_SYSTEM,
    HEALTH_SYSTEM,
    HEALTH_USER,
    PROMPT_VERSION,
    PROPOSALS_SYSTEM,
    build_analysis_prompt,
    build_decisions_prompt,
    build_proposals_prompt,
)
from .providers import Completion, ProviderChain
from .schema import AnyDecision, Proposal, parse_analysis, parse_decisions, parse_proposals

TOP_MARKETS_FOR_PROPOSALS = 25
RAW_EVENT_LIMIT = 2000


def _raw_text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    return json.dumps(raw, ensure_ascii=False, default=str)


def averaged_symbols(events: List[Dict[str, Any]]) -> set:
    return {e.get("symbol") for e in events if e.get("type") == "average_in" and e.get("symbol")}


class DecisionProvider:
    def __init__(
        self,
        settings: Settings,
        chain: ProviderChain,
        exchange: BybitClient,
        events: EventLog,
        alerts,
    ):
        self.settings = settings
        self.trading = settings.trading
        self.chain = chain
        self.exchange = exchange
        self.events = events
        self.alerts = alerts

    def _ask(self, purpose: str, system: str, user: str, temperature: float, max_tokens: int) -> Completion:
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        completion = self.chain.request(purpose, messages, temperature, max_tokens)
        if not completion.ok:
            error = "; ".join(completion.errors) or "no provider answered"
            logger.error(f"All LLM providers failed for {purpose}: {error}")
            self.alerts.alert_llm_failure("all providers", error)
        return completion

    # ------------------------------------------------------------------
    # Tick inputs
    # ------------------------------------------------------------------

    def proposals(self) -> List[Proposal]:
        """New-trade ideas over the top markets, best first."""
        if not self.chain.any_usable:
            logger.warning("No LLM provider configured, skipping proposals")
            return []
        markets = self.exchange.get_top_markets(TOP_MARKETS_FOR_PROPOSALS)
        if not markets:
            logger.warning("No market data for proposals")
            return []

        prompt = build_proposals_prompt(markets, self.events.weekly_summary_text(), self.trading)
        completion = self._ask("proposals", PROPOSALS_SYSTEM, prompt, 0.5, 1500)
        if not completion.ok:
            return []
        return parse_proposals(completion.content, self.trading)

    def decisions(self, positions: List[Position]) -> List[AnyDecision]:
        """One decision per position in input order, or [] if no provider answered."""
        if not positions:
            return []
        if not self.chain.any_usable:
            logger.warning("No LLM provider configured, skipping decisions")
            return []

        recent = self.events.recent_events(HISTORY_SUMMARY_DAYS)
        prompt = build_decisions_prompt(
            positions,
            self.events.weekly_summary_text(),
            averaged_symbols(recent),
            self.trading.bot_timeframe,
        )
        completion = self._ask("decisions", DECISIONS_SYSTEM, prompt, 0.4, 2000)
        if not completion.ok:
            return []

        decisions = parse_decisions(
            completion.content,
            [p.symbol for p in positions],
            provider=completion.provider,
            prompt_version=PROMPT_VERSION,
        )
        for d in decisions:
            if getattr(d, "degraded", False):
                self._report_invalid(d)
        return decisions

    def _report_invalid(self, decision) -> None:
        raw = _raw_text(decision.raw)
        logger.warning(f"Degraded decision for {decision.symbol}: {decision.failure}")
        self.events.log(
            "llm_invalid_response",
            {
                "symbol": decision.symbol,
                "action": "DO_NOTHING",
                "failure": decision.failure,
                "raw": raw[:RAW_EVENT_LIMIT],
                "provider": decision.provider,
                "prompt_version": decision.prompt_version,
            },
        )
        self.alerts.alert_invalid_response(decision.symbol, f"{decision.failure}: {raw}")

    # ------------------------------------------------------------------
    # Single-symbol helpers
    # ------------------------------------------------------------------

    def _neutral(self, symbol: str, reason: str) -> Dict[str, Any]:
        return {
            "symbol": symbol,
            "signal": "HOLD",
            "confidence": 0,
            "reason": reason,
            "position_size_usdt": 0.0,
            "leverage": max(1, int(self.trading.min_leverage)),
        }

    def analyze_market(self, symbol: str, market_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """BUY/SELL/HOLD for one symbol with size and leverage inside configured limits."""
        if not self.chain.any_usable:
            return self._neutral(symbol, "No LLM provider configured")
        if market_data is None:
            market_data = self.exchange.get_market_data(symbol)

        prompt = build_analysis_prompt(symbol, market_data or {}, self.trading)
        completion = self._ask("analysis", ANALYSIS_SYSTEM, prompt, 0.7, 500)
        if not completion.ok:
            return self._neutral(symbol, "LLM analysis unavailable")

        result = parse_analysis(completion.content, symbol)
        min_lev = max(1, int(self.trading.min_leverage))
        max_lev = max(min_lev, int(self.trading.max_leverage))
        max_usdt = float(self.trading.max_position_usdt)

        size = result.get("position_size_usdt")
        result["position_size_usdt"] = max_usdt if size is None else min(max(size, 0.0), max_usdt)
        lev = result.get("leverage")
        result["leverage"] = min_lev if lev is None else min(max(lev, min_lev), max_lev)
        result["provider"] = completion.provider
        return result

    def make_trading_decision(
        self,
        symbol: str,
        market_data: Optional[Dict[str, Any]] = None,
        positions: Optional[List[Position]] = None,
    ) -> Dict[str, Any]:
        analysis = self.analyze_market(symbol, market_data)
        signal = analysis.get("signal", "HOLD")
        confidence = analysis.get("confidence", 0)

        mine = [p for p in positions or [] if p.symbol == symbol]
        has_long = any(p.side == "Buy" for p in mine)
        has_short = any(p.side == "Sell" for p in mine)

        action = "HOLD"
        if signal == "BUY" and confidence > 70 and not has_long:
            action = "OPEN_LONG"
        elif signal == "SELL" and confidence > 70 and not has_short:
            action = "OPEN_SHORT"
        elif signal == "SELL" and confidence > 60 and has_long:
            action = "CLOSE_LONG"
        elif signal == "BUY" and confidence > 60 and has_short:
            action = "CLOSE_SHORT"

        return {
            "action": action,
            "symbol": symbol,
            "confidence": confidence,
            "reason": analysis.get("reason", ""),
            "analysis": analysis,
            "position_size_usdt": analysis.get("position_size_usdt") or float(self.trading.max_position_usdt),
            "leverage": analysis.get("leverage") or max(1, int(self.trading.min_leverage)),
        }

    def test_connection(self) -> Dict[str, Any]:
        """Health-check every configured provider independently."""
        usable = self.chain.usable
        if not usable:
            return {"ok": False, "message": "No LLM provider configured", "providers": []}

        messages = [
            {"role": "system", "content": HEALTH_SYSTEM},
            {"role": "user", "content": HEALTH_USER},
        ]
        results = []
        for provider in usable:
            try:
                content = provider.complete(messages, 0, 20)
            except LLMProviderError as e:
                results.append({"name": provider.name, "ok": False, "error": str(e)})
                continue
            ok = '"ok"' in content
            results.append(
                {"name": provider.name, "ok": ok, "error": None if ok else f"unexpected reply: {content[:100]}"}
            )
        return {
            "ok": any(r["ok"] for r in results),
            "message": "LLM connection ok" if any(r["ok"] for r in results) else "LLM connection failed",
            "providers": results,
        }
