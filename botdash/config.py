"""Runtime configuration loaded from environment variables."""
from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path

DEFAULT_REFRESH_SEC = 0.25
DEFAULT_KLINE_TIMEFRAME = "1m"
DEFAULT_HISTORY_LIMIT = 100
DEFAULT_CANDLE_WINDOW = 150


@dataclass(frozen=True)
class BotdashConfig:
    data_dir: Path
    journal_dir: Path
    refresh_sec: float
    kline_timeframe: str
    history_limit: int
    candle_window: int
    publish_price_only: bool
    ib_host: str
    ib_port: int
    ib_client_id: int
    crypto_exchange: str
    quote_currency: str


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config() -> BotdashConfig:
    """Load config from environment with safe defaults for a local setup."""
    data_dir = Path(os.getenv("BOTDASH_DATA_DIR", "./data"))
    journal_dir = Path(os.getenv("BOTDASH_JOURNAL_DIR", str(data_dir / "journal")))
    history_limit = int(os.getenv("BOTDASH_HISTORY_LIMIT", str(DEFAULT_HISTORY_LIMIT)))
    candle_window = int(os.getenv("BOTDASH_CANDLE_WINDOW", str(DEFAULT_CANDLE_WINDOW)))
    if history_limit < 0:
        raise ValueError(f"BOTDASH_HISTORY_LIMIT must be >= 0, got {history_limit}")
    if candle_window < 2:
        raise ValueError(f"BOTDASH_CANDLE_WINDOW must be >= 2, got {candle_window}")
    return BotdashConfig(
        data_dir=data_dir,
        journal_dir=journal_dir,
        refresh_sec=float(os.getenv("BOTDASH_REFRESH_SEC", DEFAULT_REFRESH_SEC)),
        kline_timeframe=os.getenv("BOTDASH_KLINE_TIMEFRAME", DEFAULT_KLINE_TIMEFRAME),
        history_limit=history_limit,
        candle_window=candle_window,
        publish_price_only=_env_flag("BOTDASH_PUBLISH_PRICE_ONLY"),
        ib_host=os.getenv("IBKR_HOST", "127.0.0.1"),
        ib_port=int(os.getenv("IBKR_PORT", "4001")),
        ib_client_id=int(os.getenv("IBKR_CLIENT_ID", "0")),
        crypto_exchange=os.getenv("BOTDASH_CRYPTO_EXCHANGE", "PAXOS"),
        quote_currency=os.getenv("BOTDASH_QUOTE_CURRENCY", "USD"),
    )
