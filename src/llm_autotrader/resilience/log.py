"""Logging utilities for resilience patterns."""

import json
import os
from datetime import datetime, timezone
from typing import Any, Dict

from llm_autotrader.core.logger import logger


def log_event(
    event_type: str, data: Dict[str, Any], context: str = "exchange_call"
) -> None:
    """Log structured events."""
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "type": event_type,
        "context": context,
        **data,
    }

    logger.info(
        f"[RESILIENCE] {event_type}: {json.dumps(data, separators=(',', ':'), default=str)}",
        extra={"meta": log_entry},
    )

    # Optional JSONL sink
    log_path = os.environ.get("LA_RESILIENCE_JSONL")
    if log_path:
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(log_entry, default=str) + "\n")


def log_provider_error(
    provider_name: str, operation: str, error_type: str, details: str
) -> None:
    """Log provider-specific errors."""
    log_event(
        "provider_error",
        {
            "provider": provider_name,
            "operation": operation,
            "error_type": error_type,
            "details": details,
            "severity": "high",
        },
    )
