from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from llm_autotrader.constants import CONFIG_PATH, WORKSPACE_DIR


class ExchangeSettings(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    api_key: str = ""
    api_secret: str = ""
    testnet: bool = True
    base_url: str = "https://api-testnet.bybit.com"
    timeout_s: float = 15.0

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)


class ProviderSettings(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    name: str
    api_key: str = ""
    model: str = "gpt-4"
    enabled: bool = False
    base_url: str = "https://api.openai.com/v1/chat/completions"

    @property
    def usable(self) -> bool:
        return bool(self.api_key) and self.enabled


class TradingSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_position_usdt: float = Field(default=100.0, ge=0.0)
    min_leverage: int = Field(default=1, ge=1)
    max_leverage: int = Field(default=5, ge=1)
    aggressiveness: str = "balanced"
    max_managed_positions: int = Field(default=10, ge=1)
    auto_open_min_positions: int = Field(default=5, ge=0)
    auto_open_enabled: bool = False
    bot_timeframe: int = Field(default=5, ge=1)
    bot_history_candles: int = Field(default=60, ge=1, le=60)

    # Risk guards
    trading_enabled: bool = True
    daily_loss_limit_usdt: float = 0.0
    max_total_exposure_usdt: float = 0.0
    action_cooldown_minutes: int = 30
    bot_strict_mode: bool = False

    @field_validator("aggressiveness", mode="before")
    def normalize_aggressiveness(cls, v: str) -> str:
        v = (v or "balanced").lower()
        if v not in ("conservative", "balanced", "aggressive"):
            return "balanced"
        return v

    @model_validator(mode="after")
    def leverage_order(self) -> "TradingSettings":
        if self.max_leverage < self.min_leverage:
            raise ValueError(
                f"max_leverage ({self.max_leverage}) must be >= min_leverage ({self.min_leverage})"
            )
        return self


class AlertSettings(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    webhook_url: str = ""
    on_llm_failure: bool = True
    on_invalid_response: bool = True
    on_risk_limit: bool = True
    on_exchange_error: bool = False
    on_repeated_failures: bool = True
    repeated_failure_threshold: int = 3
    cooldown_seconds: float = 60.0


def _default_chatgpt() -> ProviderSettings:
    return ProviderSettings(name="chatgpt", model="gpt-4")


def _default_deepseek() -> ProviderSettings:
    return ProviderSettings(
        name="deepseek",
        model="deepseek-chat",
        base_url="https://api.deepseek.com/chat/completions",
    )


class Settings(BaseModel):
    """Immutable application settings, passed explicitly to every component."""

    model_config = ConfigDict(frozen=True)

    exchange: ExchangeSettings = Field(default_factory=ExchangeSettings)
    chatgpt: ProviderSettings = Field(default_factory=_default_chatgpt)
    deepseek: ProviderSettings = Field(default_factory=_default_deepseek)
    trading: TradingSettings = Field(default_factory=TradingSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)
    workspace: str = str(WORKSPACE_DIR)

    @property
    def workspace_dir(self) -> Path:
        return Path(self.workspace)

    @property
    def providers(self) -> List[ProviderSettings]:
        """Providers in fallback order."""
        return [self.chatgpt, self.deepseek]


# Credential env vars win over anything read from files
CREDENTIAL_ENV = {
    "BYBIT_API_KEY": ("exchange", "api_key"),
    "BYBIT_API_SECRET": ("exchange", "api_secret"),
    "CHATGPT_API_KEY": ("chatgpt", "api_key"),
    "DEEPSEEK_API_KEY": ("deepseek", "api_key"),
}


def load_settings(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Load settings with precedence: defaults < yaml < LA_* env < credential env < overrides."""
    data: Dict[str, Any] = {}

    path = config_path or CONFIG_PATH
    if path and Path(path).exists():
        data = _load_yaml(Path(path))

    data = _apply_env_overrides(data)

    for env_name, (section, key) in CREDENTIAL_ENV.items():
        val = os.environ.get(env_name, "")
        if val:
            data.setdefault(section, {})[key] = val

    if overrides:
        data = _deep_merge(data, overrides)

    # Environment kill switch overrides everything for safety
    if os.environ.get("LA_KILL_SWITCH", "FALSE").upper() == "TRUE":
        data.setdefault("trading", {})["trading_enabled"] = False

    for name in ("chatgpt", "deepseek"):
        if name in data:
            data[name] = {"name": name, **data[name]}
            if name == "deepseek":
                data[name].setdefault("model", "deepseek-chat")
                data[name].setdefault(
                    "base_url", "https://api.deepseek.com/chat/completions"
                )

    return Settings(**data)


def _load_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply LA_<SECTION>_<KEY> overrides, e.g. LA_TRADING_BOT_TIMEFRAME=15."""
    sections = {"exchange", "chatgpt", "deepseek", "trading", "alerts"}
    for key, value in os.environ.items():
        if not key.startswith("LA_"):
            continue
        parts = key[3:].lower().split("_")
        section = parts[0]
        if section not in sections or len(parts) < 2:
            continue
        config.setdefault(section, {})["_".join(parts[1:])] = _parse_value(value)
    if os.environ.get("LA_WORKSPACE"):
        config["workspace"] = os.environ["LA_WORKSPACE"]
    return config


def _parse_value(v: str) -> Any:
    if v.lower() in ("true", "false"):
        return v.lower() == "true"
    try:
        if "." in v:
            return float(v)
        return int(v)
    except ValueError:
        return v
