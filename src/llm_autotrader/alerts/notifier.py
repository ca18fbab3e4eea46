"""Telegram / webhook alert notifier with dedup."""

from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx

from llm_autotrader.core.config import AlertSettings
from llm_autotrader.core.logger import logger

TELEGRAM_API = "https://api.telegram.org"
ALERT_TIMEOUT_SECONDS = 5.0


def format_alert(level: str, message: str, context: Optional[Dict[str, Any]] = None, when: Optional[datetime] = None) -> str:
    when = when or datetime.now()
    text = f"[{level.upper()}][BOT][{when.strftime('%d.%m %H:%M')}] {message}"
    for key, value in (context or {}).items():
        if isinstance(value, (str, int, float, bool)) or value is None:
            rendered = str(value)
        else:
            rendered = json.dumps(value, ensure_ascii=False, default=str)
        text += f"\n  {key}: {rendered}"
    return text


class AlertNotifier:
    """Fire-and-forget alerts.

    Sends to Telegram and/or a generic webhook when configured, otherwise only
    logs. Identical messages inside ``cooldown_seconds`` are dropped. ``send``
    never raises; delivery problems are logged.
    """

    def __init__(
        self,
        settings: AlertSettings,
        *,
        http: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self._http = http or httpx.Client(timeout=ALERT_TIMEOUT_SECONDS)
        self._clock = clock
        self._sent_hashes: Dict[str, float] = {}

    @property
    def telegram_configured(self) -> bool:
        return bool(self.settings.telegram_bot_token and self.settings.telegram_chat_id)

    @property
    def configured(self) -> bool:
        return self.telegram_configured or bool(self.settings.webhook_url)

    def _message_hash(self, text: str) -> str:
        return hashlib.md5(text.encode("utf-8")).hexdigest()

    def _is_duplicate(self, key: str) -> bool:
        now = self._clock()
        cooldown = self.settings.cooldown_seconds
        self._sent_hashes = {k: v for k, v in self._sent_hashes.items() if now - v < cooldown}
        return key in self._sent_hashes

    # -- shortcuts -------------------------------------------------------

    def alert_llm_failure(self, provider: str, error: str) -> None:
        if self.settings.on_llm_failure:
            self.send("ERROR", f"LLM failure ({provider})", {"error": error[:300]})

    def alert_invalid_response(self, symbol: str, raw: str) -> None:
        if self.settings.on_invalid_response:
            self.send("WARN", f"Invalid LLM response for {symbol}", {"raw_preview": raw[:200]})

    def alert_risk_limit(self, reason: str, context: Optional[Dict[str, Any]] = None) -> None:
        if self.settings.on_risk_limit:
            self.send("WARN", f"Risk limit: {reason}", context or {})

    def alert_exchange_error(self, method: str, error: str, ret_code: int = 0) -> None:
        if self.settings.on_exchange_error:
            self.send(
                "ERROR",
                f"Exchange API error [{method}]",
                {"ret_code": ret_code or "n/a", "error": error[:200]},
            )

    def alert_repeated_failures(self, symbol: str, count: int) -> None:
        if self.settings.on_repeated_failures and count >= self.settings.repeated_failure_threshold:
            self.send("ERROR", f"Repeated failures for {symbol}", {"consecutive_errors": count})

    # -- delivery --------------------------------------------------------

    def send(self, level: str, message: str, context: Optional[Dict[str, Any]] = None) -> bool:
        """Deliver to every configured destination. Returns True if anything went out."""
        # Dedup on level+message+context, not the timestamped text
        key = self._message_hash(f"{level}|{message}|{json.dumps(context or {}, sort_keys=True, default=str)}")
        if self._is_duplicate(key):
            logger.info(f"Duplicate alert suppressed: {message}")
            return False

        text = format_alert(level, message, context)
        if not self.configured:
            logger.warning(f"ALERT (no destination configured): {text}")
            self._sent_hashes[key] = self._clock()
            return False

        delivered = False
        if self.telegram_configured:
            url = f"{TELEGRAM_API}/bot{self.settings.telegram_bot_token}/sendMessage"
            delivered |= self._post(url, {"chat_id": self.settings.telegram_chat_id, "text": text}, "Telegram")
        if self.settings.webhook_url:
            delivered |= self._post(self.settings.webhook_url, {"text": text}, "Webhook")

        self._sent_hashes[key] = self._clock()
        return delivered

    def _post(self, url: str, body: Dict[str, Any], name: str) -> bool:
        try:
            resp = self._http.post(url, json=body, timeout=ALERT_TIMEOUT_SECONDS)
            resp.raise_for_status()
            return True
        except httpx.HTTPError as exc:
            logger.error(f"{name} alert failed: {exc}")
            return False
