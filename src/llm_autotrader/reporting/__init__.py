from .metrics import MANAGE_TYPES, MetricsAggregator

__all__ = ["MANAGE_TYPES", "MetricsAggregator"]
