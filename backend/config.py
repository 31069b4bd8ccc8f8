"""
Configuration for the dip trading engine.

Engine-wide parameters, SMA windows, address validation and logging setup.
"""

import logging
import os
import re
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from errors import ConfigValidationError

# ============================================================================
# BASE TOKEN / ADDRESSES
# ============================================================================

WLD_ADDRESS = "0x2cfc85d8e48f8eab294be644d9e25c3030863003"
WLD_SYMBOL = "WLD"

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


def is_valid_address(address: str) -> bool:
    """Check that an address is a 0x-prefixed 40 hex character string"""
    if not address or not isinstance(address, str):
        return False
    return bool(ADDRESS_PATTERN.match(address))


def normalize_address(address: str) -> str:
    """Validate and lowercase an asset address"""
    if not is_valid_address(address):
        raise ConfigValidationError(f"Invalid token address format: {address}")
    return address.lower()


# ============================================================================
# TIME WINDOWS
# ============================================================================

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR

# SMA window label -> duration in seconds
SMA_WINDOWS = {
    "5min": 5 * MINUTE,
    "1h": HOUR,
    "6h": 6 * HOUR,
    "24h": DAY,
    "1d": DAY,
    "7d": 7 * DAY,
}

PRICE_RETENTION_SEC = 7 * DAY


def resolve_window(timeframe: Union[str, int, float]) -> float:
    """
    Turn a window label ("5min", "1h", ...) or a number of seconds into seconds.

    Raises:
        ConfigValidationError: unknown label or non-positive duration
    """
    if isinstance(timeframe, str):
        if timeframe in SMA_WINDOWS:
            return float(SMA_WINDOWS[timeframe])
        try:
            seconds = float(timeframe)
        except ValueError:
            raise ConfigValidationError(f"Unknown timeframe: {timeframe}")
    else:
        seconds = float(timeframe)

    if seconds <= 0:
        raise ConfigValidationError(f"Timeframe must be positive: {timeframe}")
    return seconds


def sma_label_for(timeframe: Union[str, int, float]) -> str:
    """Map a timeframe onto one of the SMA window labels."""
    if isinstance(timeframe, str) and timeframe in SMA_WINDOWS:
        return timeframe
    seconds = resolve_window(timeframe)
    for label, duration in SMA_WINDOWS.items():
        if duration == seconds:
            return label
    raise ConfigValidationError(
        f"Timeframe {timeframe} is not an SMA window ({', '.join(SMA_WINDOWS)})"
    )


def format_timeframe(seconds: float) -> str:
    """Human-readable duration, e.g. 300 -> '5m', 7200 -> '2h'"""
    if seconds >= DAY and seconds % DAY == 0:
        return f"{int(seconds // DAY)}d"
    if seconds >= HOUR and seconds % HOUR == 0:
        return f"{int(seconds // HOUR)}h"
    if seconds >= MINUTE and seconds % MINUTE == 0:
        return f"{int(seconds // MINUTE)}m"
    return f"{seconds:g}s"


# ============================================================================
# ENGINE PARAMETERS
# ============================================================================

@dataclass
class EngineConfig:
    """Engine-wide configuration"""

    # Storage
    data_dir: str = "data"
    log_dir: str = "logs"
    snapshot_file: str = "engine_snapshot.json"
    snapshot_interval_sec: float = 300.0

    # Base currency and wallet used for swaps
    base_token_address: str = WLD_ADDRESS
    base_token_symbol: str = WLD_SYMBOL
    wallet_address: Optional[str] = None

    # Price store
    price_retention_sec: float = PRICE_RETENTION_SEC
    sma_recompute_interval_sec: float = 30.0
    min_sma_samples: int = 3

    # Bulk price refresh
    price_refresh_interval_sec: float = 2.0
    refresh_timeout_sec: float = 15.0
    stale_price_max_age_sec: float = DAY
    failure_drop_threshold: int = 20
    failure_drop_window_sec: float = DAY

    # Collaborator timeouts
    quote_timeout_sec: float = 10.0
    swap_timeout_sec: float = 60.0

    # Volatility
    volatility_window: int = 50
    volatility_min_samples: int = 10

    # HTTP quote API (optional)
    quote_api_url: Optional[str] = None

    # Alerts
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    discord_webhook_url: Optional[str] = None

    # REST API
    api_key: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def snapshot_path(self) -> str:
        return os.path.join(self.data_dir, self.snapshot_file)

    def to_dict(self) -> dict:
        d = asdict(self)
        # Never persist secrets
        for key in ("telegram_bot_token", "discord_webhook_url", "api_key"):
            d[key] = None
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Load config from environment variables"""
        defaults = cls()
        return cls(
            data_dir=os.getenv("DIPWATCH_DATA_DIR", defaults.data_dir),
            log_dir=os.getenv("DIPWATCH_LOG_DIR", defaults.log_dir),
            snapshot_interval_sec=float(os.getenv("DIPWATCH_SNAPSHOT_INTERVAL", defaults.snapshot_interval_sec)),
            base_token_address=os.getenv("DIPWATCH_BASE_TOKEN", defaults.base_token_address).lower(),
            base_token_symbol=os.getenv("DIPWATCH_BASE_SYMBOL", defaults.base_token_symbol),
            wallet_address=os.getenv("DIPWATCH_WALLET_ADDRESS"),
            price_refresh_interval_sec=float(os.getenv("DIPWATCH_REFRESH_INTERVAL", defaults.price_refresh_interval_sec)),
            quote_timeout_sec=float(os.getenv("DIPWATCH_QUOTE_TIMEOUT", defaults.quote_timeout_sec)),
            swap_timeout_sec=float(os.getenv("DIPWATCH_SWAP_TIMEOUT", defaults.swap_timeout_sec)),
            quote_api_url=os.getenv("DIPWATCH_QUOTE_API_URL"),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID"),
            discord_webhook_url=os.getenv("DISCORD_WEBHOOK_URL"),
            api_key=os.getenv("API_KEY"),
            host=os.getenv("DIPWATCH_HOST", defaults.host),
            port=int(os.getenv("DIPWATCH_PORT", defaults.port)),
        )


# ============================================================================
# LOGGING SETUP
# ============================================================================

# Loggers whose INFO records also go to the trade audit log
TRADE_LOGGERS = ("cost_basis_ledger", "strategy_manager", "trigger_engine")


class _TradeLogFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.name in TRADE_LOGGERS


def setup_logging(log_dir: str = "logs", level: int = logging.INFO) -> logging.Logger:
    """Setup logging: full log file, trade audit log, and console"""
    Path(log_dir).mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # File handler - all logs
    file_handler = logging.FileHandler(
        f"{log_dir}/dipwatch_{datetime.now().strftime('%Y%m%d')}.log"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s'
    ))

    # Trade-specific log
    trade_handler = logging.FileHandler(
        f"{log_dir}/trades_{datetime.now().strftime('%Y%m%d')}.log"
    )
    trade_handler.setLevel(logging.INFO)
    trade_handler.addFilter(_TradeLogFilter())
    trade_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(message)s'
    ))

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(message)s'
    ))

    root.addHandler(file_handler)
    root.addHandler(trade_handler)
    root.addHandler(console_handler)

    return root
