from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings

_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "SPY Options Backtester"
    LOG_LEVEL: str = "INFO"

    # Performance analytics
    RISK_FREE_RATE: float = 0.02
    TRADING_DAYS_PER_YEAR: int = 252
    SORTINO_EPSILON: float = 0.0001  # downside deviation when no day lost money

    # Option pricing
    ASSUMED_VOLATILITY: float = 0.20
    STRIKE_INTERVAL: float = 5.0
    STRIKES_EACH_SIDE: int = 5

    # Market condition classification
    DEFAULT_VIX: float = 15.0
    VOLATILE_VIX_THRESHOLD: float = 25.0
    MOMENTUM_LOOKBACK_DAYS: int = 10
    MOMENTUM_THRESHOLD_PERCENT: float = 2.0

    # Trade admission
    MAX_CANDIDATES_PER_DAY: int = 3
    MAX_CONFIDENCE_SCORE: float = 0.95

    # Synthetic data generator
    SYNTHETIC_START_PRICE: float = 450.0
    SYNTHETIC_DAILY_VOLATILITY: float = 0.01
    SYNTHETIC_START_VIX: float = 15.0
    SYNTHETIC_MIN_VIX: float = 8.0

    # Optimizer
    OPTIMIZER_MAX_WORKERS: int = 0  # 0 = os.cpu_count()

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8"}
