from .actions import ManualActions, normalize_side
from .factory import App, build_app
from .tick import TickOrchestrator, TickState, consecutive_failures, tick_summary

__all__ = [
    "App",
    "ManualActions",
    "TickOrchestrator",
    "TickState",
    "build_app",
    "consecutive_failures",
    "normalize_side",
    "tick_summary",
]
