"""LLM-guided leveraged futures autotrader."""

__version__ = "0.3.0"
