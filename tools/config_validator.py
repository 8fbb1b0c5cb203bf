"""
Configuration Validation Module

Validates app.yaml against Pydantic schemas before the bot starts.
``${VAR}`` references are expanded from the environment so keys and RPC
URLs stay out of the file.

Usage:
    from tools.config_validator import load_config

    config = load_config("config/app.yaml")
"""
import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from core.position_state import TradeMode, TrailingStop
from core.venue import ALLOWED_OVERRIDES

logger = logging.getLogger(__name__)


class AppSection(BaseModel):
    bot_mode: str = Field(default="COPY", description="COPY mirrors trades; SELLING liquidates and exits")

    @field_validator("bot_mode")
    @classmethod
    def validate_bot_mode(cls, v: str) -> str:
        mode = v.strip().upper()
        if mode not in ("COPY", "SELLING"):
            raise ValueError(f"bot_mode must be COPY or SELLING, got {v}")
        return mode


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    file: Optional[str] = Field(default="logs/copytrader.log")


class WalletConfig(BaseModel):
    public_key: str = Field(min_length=1, description="Controlled wallet address")
    watched_wallet: str = Field(min_length=1, description="Wallet whose trades are mirrored")


class TrailingStopConfig(BaseModel):
    enabled: bool = False
    distance_pct: Decimal = Field(default=Decimal("0"), ge=0, lt=100, description="Percent below peak")
    activation_pct: Decimal = Field(default=Decimal("0"), ge=0, description="Profit % before trailing starts")

    @model_validator(mode="after")
    def validate_distance(self) -> "TrailingStopConfig":
        if self.enabled and self.distance_pct <= 0:
            raise ValueError("trailing_stop.distance_pct must be > 0 when enabled")
        return self

    def build(self) -> Optional[TrailingStop]:
        if not self.enabled:
            return None
        return TrailingStop(distance_pct=self.distance_pct, activation_pct=self.activation_pct)


class TradingConfig(BaseModel):
    trade_mode: TradeMode = TradeMode.EXACT
    buy_amount_sol: Decimal = Field(default=Decimal("0"), ge=0, description="Fixed spend per buy (SAFE)")
    take_profit_pct: Optional[Decimal] = Field(default=None, gt=0)
    stop_loss_pct: Optional[Decimal] = Field(default=None, gt=0, le=100)
    trailing_stop: TrailingStopConfig = Field(default_factory=TrailingStopConfig)
    slippage_pct: Decimal = Field(default=Decimal("10"), gt=0, le=100)
    priority_fee_sol: Decimal = Field(default=Decimal("0.0001"), ge=0)
    preferred_venue: str = Field(default="none")
    enable_multi_buy: bool = False
    confirmation_timeout_seconds: float = Field(default=30.0, gt=0)
    confirmation_poll_seconds: float = Field(default=1.0, gt=0)

    @field_validator("trade_mode", mode="before")
    @classmethod
    def normalize_trade_mode(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("preferred_venue")
    @classmethod
    def validate_venue(cls, v: str) -> str:
        venue = (v or "none").strip().lower()
        if venue not in ALLOWED_OVERRIDES:
            raise ValueError(f"preferred_venue must be one of: {', '.join(ALLOWED_OVERRIDES)}")
        return venue

    @model_validator(mode="after")
    def validate_safe_mode(self) -> "TradingConfig":
        if self.trade_mode == TradeMode.SAFE:
            if self.buy_amount_sol <= 0:
                raise ValueError("buy_amount_sol must be > 0 in SAFE mode")
            if self.take_profit_pct is None or self.stop_loss_pct is None:
                raise ValueError("take_profit_pct and stop_loss_pct are required in SAFE mode")
        return self


class PollingConfig(BaseModel):
    interval_seconds: float = Field(default=5.0, gt=0)


class FeedConfig(BaseModel):
    url: str = Field(default="wss://api.coinvera.io")
    api_key: str = Field(default="")
    reconnect_delay_seconds: float = Field(default=5.0, gt=0)
    ping_interval_seconds: float = Field(default=10.0, gt=0)
    dedupe_window: int = Field(default=1000, gt=0, description="Recent signatures remembered for dedupe")


class EndpointsConfig(BaseModel):
    solana_rpc: str = Field(min_length=1)
    execution_url: str = Field(default="https://api.solanaportal.io/api/trading")
    price_url: str = Field(default="https://api.coinvera.io/api/v1/price")
    price_api_key: str = Field(default="")


class StorageConfig(BaseModel):
    positions_file: str = Field(default="data/positions.json")


class AlertsConfig(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    min_severity: str = "warning"
    dry_run: bool = False
    dedupe_seconds: float = Field(default=60.0, ge=0)


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)


class AppConfig(BaseModel):
    """Complete validated bot configuration."""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    wallet: WalletConfig
    trading: TradingConfig = Field(default_factory=TradingConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    endpoints: EndpointsConfig
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Render a YAML error with line/column context."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"

    line, column = mark.line, mark.column
    try:
        lines = file_path.read_text(encoding="utf-8").splitlines()
    except OSError:
        lines = []
    snippet_lines = []
    for idx in range(max(0, line - 1), min(len(lines), line + 2)):
        pointer = ">>" if idx == line else "  "
        snippet_lines.append(f"{pointer} {idx + 1:4d} | {lines[idx]}")
    problem = getattr(error, "problem", str(error))

    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        "Context:\n" + "\n".join(snippet_lines)
    )


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {key: _expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    return value


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validation_messages(name: str, error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        field = " -> ".join(str(loc) for loc in item["loc"]) or "(root)"
        messages.append(f"{name}: {field}: {item['msg']}")
    return messages


def parse_config(raw: Dict[str, Any]) -> AppConfig:
    """Validate an already-loaded mapping (env references expanded)."""
    return AppConfig.model_validate(_expand_env(raw))


def validate_config(path: Union[str, Path]) -> List[str]:
    """
    Validate a config file.

    Returns:
        List of error messages (empty if valid)
    """
    file_path = Path(path)
    try:
        parse_config(load_yaml_file(file_path))
        logger.info(f"✅ {file_path.name} validation passed")
        return []
    except FileNotFoundError as e:
        return [f"{file_path.name}: {e}"]
    except yaml.YAMLError as e:
        return [f"{file_path.name}: Invalid YAML - {e}"]
    except ValidationError as e:
        return _validation_messages(file_path.name, e)


def load_config(path: Union[str, Path]) -> AppConfig:
    """
    Load and validate a config file.

    Raises:
        ValueError: Listing every validation problem
    """
    file_path = Path(path)
    errors = validate_config(file_path)
    if errors:
        for idx, error in enumerate(errors, start=1):
            logger.error(f"{idx:>2}. {error.splitlines()[0]}")
        raise ValueError(f"Invalid configuration: {len(errors)} error(s) found\n" + "\n".join(errors))
    return parse_config(load_yaml_file(file_path))
