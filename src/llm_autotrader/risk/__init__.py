from .guard import COOLDOWN_TYPES, DAILY_PNL_TYPES, DANGEROUS_ACTIONS, RiskCheck, RiskGuard
from .pending import PendingActionStore

__all__ = [
    "COOLDOWN_TYPES",
    "DAILY_PNL_TYPES",
    "DANGEROUS_ACTIONS",
    "RiskCheck",
    "RiskGuard",
    "PendingActionStore",
]
