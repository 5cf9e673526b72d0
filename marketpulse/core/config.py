"""
Configuration Manager - Loads and validates engine configuration.

Merges YAML config with environment variables. Environment variables take
precedence over YAML values so deployments can tune cadences and keys
without editing files.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "config/config.yaml"


def _as_bool(v: str) -> bool:
    return v.lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

_ENV_MAPPINGS = {
    "LOG_LEVEL": ("app", "log_level"),
    "LOG_DIR": ("app", "log_dir"),
    "LOG_JSON": ("app", "json_logs", _as_bool),
    "PRICE_TICK_SECONDS": ("cadence", "price_tick_seconds", float),
    "BOOK_REFRESH_SECONDS": ("cadence", "book_refresh_seconds", float),
    "PRICE_FETCH_PROBABILITY": ("cadence", "price_fetch_probability", float),
    "GLOBALS_FETCH_PROBABILITY": ("cadence", "globals_fetch_probability", float),
    "DEFAULT_PAIR": ("trading", "default_pair", lambda v: v.strip().upper()),
    "TRADING_PAIRS": (
        "trading",
        "pairs",
        lambda v: [p.strip().upper() for p in v.split(",") if p.strip()],
    ),
    "TRADE_TAPE_CAPACITY": ("trading", "trade_tape_capacity", int),
    "ORDER_BOOK_DEPTH": ("trading", "order_book_depth", int),
    "GATEWAY_TIMEOUT_SECONDS": ("gateway", "timeout_seconds", float),
    "GATEWAY_CACHE_TTL_SECONDS": ("gateway", "cache_ttl_seconds", float),
    "INSTRUMENTS_LIMIT": ("gateway", "instruments_limit", int),
    "COINGECKO_BASE_URL": ("gateway", "coingecko_url"),
    "COINGECKO_API_KEY": ("gateway", "coingecko_api_key"),
    "BINANCE_BASE_URL": ("gateway", "binance_url"),
    "CRYPTOPANIC_API_KEY": ("gateway", "cryptopanic_api_key"),
    "API_HOST": ("api", "host"),
    "API_PORT": ("api", "port", int),
}


def _apply_env_overrides(config: Dict[str, Any]) -> None:
    """Override YAML values with environment variables where set."""
    for env_key, mapping in _ENV_MAPPINGS.items():
        value = os.getenv(env_key)
        if value is None:
            continue
        section, key = mapping[0], mapping[1]
        converter = mapping[2] if len(mapping) > 2 else str
        try:
            section_dict = config.get(section)
            if not isinstance(section_dict, dict):
                section_dict = {}
                config[section] = section_dict
            section_dict[key] = converter(value)
        except (ValueError, TypeError) as e:
            logging.getLogger("config").warning(
                "Env %s=%r failed to convert: %s. Using YAML value.",
                env_key, value, e,
            )


# ---------------------------------------------------------------------------
# Pydantic Configuration Models
# ---------------------------------------------------------------------------

class AppConfig(BaseModel):
    name: str = "marketpulse"
    log_level: str = "INFO"
    log_dir: str = "logs"
    json_logs: bool = False


class GatewayConfig(BaseModel):
    coingecko_url: str = "https://api.coingecko.com/api/v3"
    coingecko_api_key: str = ""
    binance_url: str = "https://api.binance.com"
    fear_greed_url: str = "https://api.alternative.me/fng/"
    cryptopanic_url: str = "https://cryptopanic.com/api/v1/posts/"
    cryptopanic_api_key: str = ""
    timeout_seconds: float = 10.0
    # Per-kind overrides keyed by FetchKind value, e.g. {"order_book": 5}
    kind_timeouts: Dict[str, float] = Field(default_factory=dict)
    cache_ttl_seconds: float = 20.0
    instruments_limit: int = 50
    news_limit: int = 20

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v

    @field_validator("cache_ttl_seconds")
    @classmethod
    def validate_cache_ttl(cls, v):
        if v < 0:
            raise ValueError("cache_ttl_seconds must be >= 0")
        return v

    @field_validator("instruments_limit")
    @classmethod
    def validate_instruments_limit(cls, v):
        if v < 1 or v > 250:
            raise ValueError("instruments_limit must be between 1 and 250")
        return v


class CadenceConfig(BaseModel):
    """Timer intervals and sampling probabilities for the three cadences."""
    price_tick_seconds: float = 30.0
    book_refresh_seconds: float = 60.0
    # Share of fast ticks that hit the real gateway instead of simulating.
    price_fetch_probability: float = 0.10
    # Share of fast ticks that also resync market globals.
    globals_fetch_probability: float = 0.05
    stop_timeout_seconds: float = 5.0

    @field_validator("price_tick_seconds", "book_refresh_seconds", "stop_timeout_seconds")
    @classmethod
    def validate_interval(cls, v):
        if v <= 0:
            raise ValueError("cadence intervals must be positive")
        return v

    @field_validator("price_fetch_probability", "globals_fetch_probability")
    @classmethod
    def validate_probability(cls, v):
        if v < 0 or v > 1:
            raise ValueError("probabilities must be between 0 and 1")
        return v


class FallbackInstrument(BaseModel):
    id: str
    symbol: str
    name: str
    price: float
    change_24h_pct: float = 0.0
    market_cap: float = 0.0
    volume_24h: float = 0.0

    @field_validator("price")
    @classmethod
    def validate_price(cls, v):
        if v <= 0:
            raise ValueError("fallback price must be positive")
        return v


def _default_fallback_instruments() -> List[FallbackInstrument]:
    return [
        FallbackInstrument(id="bitcoin", symbol="BTC", name="Bitcoin", price=43250.5,
                           change_24h_pct=2.94, market_cap=846789123456, volume_24h=25847123456),
        FallbackInstrument(id="ethereum", symbol="ETH", name="Ethereum", price=2645.89,
                           change_24h_pct=-1.22, market_cap=318000000000, volume_24h=12500000000),
        FallbackInstrument(id="solana", symbol="SOL", name="Solana", price=98.0,
                           change_24h_pct=4.1, market_cap=42000000000, volume_24h=2100000000),
        FallbackInstrument(id="binancecoin", symbol="BNB", name="BNB", price=315.0,
                           change_24h_pct=0.8, market_cap=48000000000, volume_24h=900000000),
        FallbackInstrument(id="cardano", symbol="ADA", name="Cardano", price=0.52,
                           change_24h_pct=-2.3, market_cap=18000000000, volume_24h=450000000),
    ]


class TradingConfig(BaseModel):
    pairs: List[str] = Field(default_factory=lambda: ["BTCUSDT", "ETHUSDT", "SOLUSDT", "BNBUSDT", "ADAUSDT"])
    default_pair: str = "BTCUSDT"
    trade_tape_capacity: int = 20
    order_book_depth: int = 20
    top_movers: int = 5
    fallback_instruments: List[FallbackInstrument] = Field(default_factory=_default_fallback_instruments)

    @field_validator("trade_tape_capacity", "order_book_depth", "top_movers")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_default_pair(self):
        if self.default_pair not in self.pairs:
            raise ValueError(f"default_pair {self.default_pair!r} is not in pairs")
        return self


class PortfolioConfig(BaseModel):
    """Opening balances served by the local account source."""
    total_balance: float = 19000.12
    available_balance: float = 17000.12
    in_orders: float = 2000.0
    total_pnl_pct: float = 2.94
    balance_tolerance: float = 1e-6

    @model_validator(mode="after")
    def validate_balances(self):
        if abs(self.available_balance + self.in_orders - self.total_balance) > max(self.balance_tolerance, 1e-6):
            raise ValueError("available_balance + in_orders must equal total_balance")
        return self


class ApiConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8090


class EngineConfig(BaseModel):
    """Master configuration model with full validation."""
    app: AppConfig = Field(default_factory=AppConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    cadence: CadenceConfig = Field(default_factory=CadenceConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    portfolio: PortfolioConfig = Field(default_factory=PortfolioConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)


# ---------------------------------------------------------------------------
# Configuration Manager (Singleton)
# ---------------------------------------------------------------------------

def _read_yaml(config_path: str) -> Dict[str, Any]:
    config_file = Path(config_path)
    if not config_file.exists():
        return {}
    with open(config_file, "r") as f:
        return yaml.safe_load(f) or {}


class ConfigManager:
    """
    Thread-safe configuration manager.

    Loads configuration from YAML, overlays environment variables, and
    validates everything through Pydantic.
    """

    _instance: Optional[ConfigManager] = None
    _config: Optional[EngineConfig] = None
    _lock: threading.Lock = threading.Lock()

    def __new__(cls) -> ConfigManager:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._config is None:
            self.load()

    def load(self, config_path: str = DEFAULT_CONFIG_PATH) -> EngineConfig:
        """Load configuration from YAML + environment variables."""
        load_dotenv()
        yaml_config = _read_yaml(config_path)
        _apply_env_overrides(yaml_config)
        self._config = EngineConfig(**yaml_config)
        return self._config

    @property
    def config(self) -> EngineConfig:
        if self._config is None:
            self.load()
        return self._config

    def reload(self, config_path: str = DEFAULT_CONFIG_PATH) -> EngineConfig:
        return self.load(config_path)

    def get(self, dotpath: str, default: Any = None) -> Any:
        """
        Access config values using dot notation.

        Example: config.get("cadence.price_tick_seconds") -> 30.0
        """
        obj: Any = self._config
        for key in dotpath.split("."):
            if hasattr(obj, key):
                obj = getattr(obj, key)
            elif isinstance(obj, dict) and key in obj:
                obj = obj[key]
            else:
                return default
        return obj

    def to_dict(self) -> Dict[str, Any]:
        return self._config.model_dump() if self._config else {}


def get_config() -> EngineConfig:
    """Get the global configuration instance."""
    return ConfigManager().config


def load_config_with_overrides(
    config_path: str = DEFAULT_CONFIG_PATH,
    overrides: Optional[Dict[str, Any]] = None,
) -> EngineConfig:
    """Load a fresh config (YAML + env) with optional deep overrides."""
    load_dotenv()
    yaml_config = _read_yaml(config_path)
    _apply_env_overrides(yaml_config)

    def _deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> None:
        for key, value in (src or {}).items():
            if isinstance(value, dict) and isinstance(dst.get(key), dict):
                _deep_update(dst[key], value)
            else:
                dst[key] = value

    if overrides:
        _deep_update(yaml_config, overrides)

    return EngineConfig(**yaml_config)
