"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from smartgrid.core.json_utils import dumps


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _float_list_env(key: str, default: Tuple[float, ...]) -> Tuple[float, ...]:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    return tuple(float(x) for x in raw.split(",") if x.strip())


@dataclass(frozen=True)
class Settings:
    # Grid shape
    default_grid_levels: int = 5
    max_grid_size: int = 10
    atr_spacing_multiplier: float = 0.5
    default_lot_size: float = 0.01
    take_profit_factor: float = 1.5
    stop_loss_factor: float = 2.0
    trailing_stop_enabled: bool = True
    trailing_stop_activation_percent: float = 0.5
    # Volatility
    atr_period: int = 14
    candle_interval: str = "1h"
    candle_limit: int = 100
    data_cache_lifetime_sec: float = 300.0
    market_conditions_adaptation: bool = True
    atr_ratio_lower: float = 0.7
    atr_ratio_upper: float = 1.5
    # Admission and risk
    minimum_signal_confidence: float = 0.7
    max_risk_per_trade: float = 1.0  # percent of capital
    max_drawdown_percent: float = 10.0
    max_concurrent_grids: int = 3
    initial_capital: float = 1000.0
    min_position_size: float = 0.001
    target_profit_percent: float = 5.0
    dynamic_position_sizing: bool = True
    partial_take_profit_enabled: bool = True
    partial_take_profit_levels: Tuple[float, ...] = (0.3, 0.5, 0.7)
    price_cross_tolerance: float = 0.01
    # Engine loop and persistence
    status_check_interval_sec: float = 60.0
    max_history_size: int = 1000
    state_dir: str = "state"
    close_grids_on_shutdown: bool = False
    # Venue
    base_url: str = "https://api.hyperliquid.xyz"
    private_key: Optional[str] = field(default=None, repr=False)
    agent_key: Optional[str] = field(default=None, repr=False)
    user_address: Optional[str] = None
    quote_suffixes: Tuple[str, ...] = ("USDT", "USDC", "USD")
    venue_timeout_sec: float = 10.0
    # Management surface
    http_host: str = "0.0.0.0"
    http_port: int = 9095
    http_token: Optional[str] = field(default=None, repr=False)
    log_file: Optional[str] = "smartgrid.log"

    def dump(self) -> dict:
        """Settings as a dict with secrets removed, for logging."""
        data = asdict(self)
        for key in ("private_key", "agent_key", "http_token"):
            data[key] = "***" if data.get(key) else None
        return data

    @classmethod
    def load(cls) -> "Settings":
        load_dotenv()
        defaults = cls()
        cfg = cls(
            default_grid_levels=_int_env("ASG_GRID_LEVELS", defaults.default_grid_levels),
            max_grid_size=_int_env("ASG_MAX_GRID_SIZE", defaults.max_grid_size),
            atr_spacing_multiplier=_float_env("ASG_ATR_MULTIPLIER", defaults.atr_spacing_multiplier),
            default_lot_size=_float_env("ASG_LOT_SIZE", defaults.default_lot_size),
            take_profit_factor=_float_env("ASG_TAKE_PROFIT_FACTOR", defaults.take_profit_factor),
            stop_loss_factor=_float_env("ASG_STOP_LOSS_FACTOR", defaults.stop_loss_factor),
            trailing_stop_enabled=env_bool("ASG_TRAILING_STOP", defaults.trailing_stop_enabled),
            trailing_stop_activation_percent=_float_env(
                "ASG_TRAILING_ACTIVATION", defaults.trailing_stop_activation_percent
            ),
            atr_period=_int_env("ASG_ATR_PERIOD", defaults.atr_period),
            candle_interval=os.getenv("ASG_CANDLE_INTERVAL", defaults.candle_interval),
            candle_limit=_int_env("ASG_CANDLE_LIMIT", defaults.candle_limit),
            data_cache_lifetime_sec=_float_env("ASG_CACHE_LIFETIME_SEC", defaults.data_cache_lifetime_sec),
            market_conditions_adaptation=env_bool("ASG_ADAPTATION", defaults.market_conditions_adaptation),
            atr_ratio_lower=_float_env("ASG_ATR_RATIO_LOWER", defaults.atr_ratio_lower),
            atr_ratio_upper=_float_env("ASG_ATR_RATIO_UPPER", defaults.atr_ratio_upper),
            minimum_signal_confidence=_float_env("ASG_MIN_CONFIDENCE", defaults.minimum_signal_confidence),
            max_risk_per_trade=_float_env("ASG_MAX_RISK_PER_TRADE", defaults.max_risk_per_trade),
            max_drawdown_percent=_float_env("ASG_MAX_DRAWDOWN_PCT", defaults.max_drawdown_percent),
            max_concurrent_grids=_int_env("ASG_MAX_CONCURRENT_GRIDS", defaults.max_concurrent_grids),
            initial_capital=_float_env("ASG_INITIAL_CAPITAL", defaults.initial_capital),
            min_position_size=_float_env("ASG_MIN_POSITION_SIZE", defaults.min_position_size),
            target_profit_percent=_float_env("ASG_TARGET_PROFIT_PCT", defaults.target_profit_percent),
            dynamic_position_sizing=env_bool("ASG_DYNAMIC_SIZING", defaults.dynamic_position_sizing),
            partial_take_profit_enabled=env_bool("ASG_PARTIAL_TP", defaults.partial_take_profit_enabled),
            partial_take_profit_levels=_float_list_env(
                "ASG_PARTIAL_TP_LEVELS", defaults.partial_take_profit_levels
            ),
            price_cross_tolerance=_float_env("ASG_PRICE_CROSS_TOLERANCE", defaults.price_cross_tolerance),
            status_check_interval_sec=_float_env("ASG_TICK_INTERVAL_SEC", defaults.status_check_interval_sec),
            max_history_size=_int_env("ASG_MAX_HISTORY", defaults.max_history_size),
            state_dir=os.getenv("ASG_STATE_DIR", defaults.state_dir),
            close_grids_on_shutdown=env_bool("ASG_CLOSE_ON_SHUTDOWN", defaults.close_grids_on_shutdown),
            base_url=os.getenv("HL_BASE_URL", defaults.base_url),
            private_key=os.getenv("HL_PRIVATE_KEY"),
            agent_key=os.getenv("HL_AGENT_KEY"),
            user_address=os.getenv("HL_USER_ADDRESS"),
            quote_suffixes=tuple(
                s.strip().upper()
                for s in os.getenv("ASG_QUOTE_SUFFIXES", ",".join(defaults.quote_suffixes)).split(",")
                if s.strip()
            ),
            venue_timeout_sec=_float_env("ASG_VENUE_TIMEOUT_SEC", defaults.venue_timeout_sec),
            http_host=os.getenv("ASG_HTTP_HOST", defaults.http_host),
            http_port=_int_env("ASG_HTTP_PORT", defaults.http_port),
            http_token=os.getenv("ASG_HTTP_TOKEN") or None,
            log_file=os.getenv("ASG_LOG_FILE", defaults.log_file) or None,
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def resolve_account(self) -> str:
        if self.user_address:
            return self.user_address
        if self.private_key:
            from eth_account import Account

            return Account.from_key(self.private_key).address
        raise RuntimeError("Missing HL_USER_ADDRESS or HL_PRIVATE_KEY")

    def resolve_signer(self):
        from eth_account import Account

        if self.private_key:
            return Account.from_key(self.private_key)
        if self.agent_key:
            return Account.from_key(self.agent_key)
        raise RuntimeError("Missing credentials: set HL_PRIVATE_KEY or HL_AGENT_KEY")

    def _validate(self) -> None:
        if self.default_grid_levels <= 0:
            raise ValueError("ASG_GRID_LEVELS must be > 0")
        if self.max_grid_size <= 0:
            raise ValueError("ASG_MAX_GRID_SIZE must be > 0")
        if self.atr_spacing_multiplier <= 0:
            raise ValueError("ASG_ATR_MULTIPLIER must be > 0")
        if self.take_profit_factor <= 0 or self.stop_loss_factor <= 0:
            raise ValueError("Take-profit and stop-loss factors must be > 0")
        if self.atr_period <= 0:
            raise ValueError("ASG_ATR_PERIOD must be > 0")
        if self.candle_limit <= self.atr_period:
            raise ValueError("ASG_CANDLE_LIMIT must exceed ASG_ATR_PERIOD")
        if self.default_lot_size <= 0 or self.min_position_size <= 0:
            raise ValueError("Lot sizes must be > 0")
        if not 0 < self.atr_ratio_lower < 1 < self.atr_ratio_upper:
            raise ValueError("ATR ratio band must satisfy 0 < lower < 1 < upper")
        if any(not 0 < lvl <= 1 for lvl in self.partial_take_profit_levels):
            raise ValueError("ASG_PARTIAL_TP_LEVELS must be within (0, 1]")
        if self.max_drawdown_percent <= 0:
            raise ValueError("ASG_MAX_DRAWDOWN_PCT must be > 0")
        if self.max_concurrent_grids <= 0:
            raise ValueError("ASG_MAX_CONCURRENT_GRIDS must be > 0")
        if self.status_check_interval_sec <= 0:
            raise ValueError("ASG_TICK_INTERVAL_SEC must be > 0")
        if self.venue_timeout_sec <= 0:
            raise ValueError("ASG_VENUE_TIMEOUT_SEC must be > 0")
        if self.price_cross_tolerance < 0:
            raise ValueError("ASG_PRICE_CROSS_TOLERANCE must be >= 0")
        if self.max_history_size <= 0:
            raise ValueError("ASG_MAX_HISTORY must be > 0")

        if self.max_drawdown_percent > 25:
            logging.getLogger("smartgrid").warning(
                f"WARNING: ASG_MAX_DRAWDOWN_PCT is {self.max_drawdown_percent}%. "
                "Consider a tighter drawdown limit for capital preservation."
            )


def _sanity_check(cfg: Settings) -> None:
    """Log critical settings once at startup so overrides are obvious."""
    logger = logging.getLogger("smartgrid")
    payload = {
        "event": "config_loaded",
        "grid_levels": cfg.default_grid_levels,
        "atr_multiplier": cfg.atr_spacing_multiplier,
        "max_concurrent_grids": cfg.max_concurrent_grids,
        "max_drawdown_percent": cfg.max_drawdown_percent,
        "tick_interval_sec": cfg.status_check_interval_sec,
        "partial_take_profit_levels": list(cfg.partial_take_profit_levels),
        "state_dir": cfg.state_dir,
    }
    logger.info(dumps(payload))
