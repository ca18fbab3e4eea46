"""Model-provider access: prompts, output contracts, fallback chain."""

from .decision_provider import DecisionProvider, averaged_symbols
from .prompts import PROMPT_VERSION, price_points_for
from .providers import ChatProvider, Completion, ProviderChain
from .schema import (
    ACTIONS,
    AnyDecision,
    AverageInOnce,
    CloseFull,
    ClosePartial,
    DoNothing,
    MoveStopToBreakeven,
    Proposal,
    parse_decisions,
    parse_proposals,
)

__all__ = [
    "DecisionProvider",
    "averaged_symbols",
    "PROMPT_VERSION",
    "price_points_for",
    "ChatProvider",
    "Completion",
    "ProviderChain",
    "ACTIONS",
    "AnyDecision",
    "AverageInOnce",
    "CloseFull",
    "ClosePartial",
    "DoNothing",
    "MoveStopToBreakeven",
    "Proposal",
    "parse_decisions",
    "parse_proposals",
]
