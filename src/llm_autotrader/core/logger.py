import json
import logging
import os
from datetime import datetime
from typing import Optional


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "meta") and isinstance(record.meta, dict):
            log_entry["meta"] = record.meta
        if record.exc_info:
            log_entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, separators=(",", ":"), default=str)


def setup_logger(name: str = "llm_autotrader", log_dir: Optional[str] = None):
    logger = logging.getLogger(name)
    logger.setLevel(os.environ.get("LA_LOG_LEVEL", "INFO").upper())

    # Avoid duplicate handlers
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler) for h in logger.handlers):
        # Console Handler (Human readable)
        ch = logging.StreamHandler()
        ch.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        logger.addHandler(ch)

    if log_dir:
        attach_json_file(logger, log_dir)

    return logger


def attach_json_file(logger: logging.Logger, log_dir: str) -> None:
    """Add the JSONL file handler once per directory."""
    os.makedirs(log_dir, exist_ok=True)
    json_path = os.path.abspath(os.path.join(log_dir, "system.jsonl"))
    for h in logger.handlers:
        if isinstance(h, logging.FileHandler) and h.baseFilename == json_path:
            return
    fh = logging.FileHandler(json_path, encoding="utf-8")
    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)


# Singleton-ish instance; child loggers (llm_autotrader.*) propagate here
logger = setup_logger()
