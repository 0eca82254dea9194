"""Daily market condition classification.

Labels each simulated day from trailing 10-day momentum and the VIX level,
and maps a condition to the position-size multiplier configured for it.
Volatility dominates trend: a rising day with VIX > 25 is still "volatile".
"""

from datetime import date

import pandas as pd

from spy_backtest.config import Settings
from spy_backtest.models import MarketCondition, RiskTolerance
from spy_backtest.schemas import AITradingSettings, MarketConditionOverride
from spy_backtest.services.backtest.market_data import PriceBar, VixPoint

settings = Settings()


def classify_condition(momentum_return: float, vix: float) -> MarketCondition:
    """First match wins: volatile, bullish, bearish, neutral."""
    threshold = settings.MOMENTUM_THRESHOLD_PERCENT / 100
    if vix > settings.VOLATILE_VIX_THRESHOLD:
        return MarketCondition.VOLATILE
    if momentum_return > threshold:
        return MarketCondition.BULLISH
    if momentum_return < -threshold:
        return MarketCondition.BEARISH
    return MarketCondition.NEUTRAL


def classify_market_conditions(
    price_data: list[PriceBar],
    vix_data: list[VixPoint],
) -> dict[date, MarketCondition]:
    """Condition per trading day.

    Days without a full lookback window are neutral. A missing VIX print
    falls back to DEFAULT_VIX.
    """
    if not price_data:
        return {}

    lookback = settings.MOMENTUM_LOOKBACK_DAYS
    closes = pd.Series([b.close for b in price_data], index=[b.date for b in price_data])
    momentum = closes / closes.shift(lookback) - 1
    vix_by_day = {v.date: v.value for v in vix_data}

    conditions: dict[date, MarketCondition] = {}
    for i, (day, r10) in enumerate(momentum.items()):
        if i < lookback or pd.isna(r10):
            conditions[day] = MarketCondition.NEUTRAL
            continue
        vix = vix_by_day.get(day, settings.DEFAULT_VIX)
        conditions[day] = classify_condition(float(r10), vix)

    return conditions


def risk_multiplier_for(condition: MarketCondition, trading_settings: AITradingSettings) -> float:
    """Position-size multiplier for a condition; 1.0 unless an override is enabled."""
    override = trading_settings.market_condition_overrides.get(condition)
    if override is None or not override.enabled:
        return 1.0
    return override.adjusted_risk


_PRESET_RISK: dict[RiskTolerance, dict[MarketCondition, float]] = {
    RiskTolerance.CONSERVATIVE: {
        MarketCondition.BULLISH: 0.8,
        MarketCondition.BEARISH: 0.3,
        MarketCondition.NEUTRAL: 0.6,
        MarketCondition.VOLATILE: 0.2,
    },
    RiskTolerance.MODERATE: {
        MarketCondition.BULLISH: 1.0,
        MarketCondition.BEARISH: 0.5,
        MarketCondition.NEUTRAL: 0.8,
        MarketCondition.VOLATILE: 0.4,
    },
    RiskTolerance.AGGRESSIVE: {
        MarketCondition.BULLISH: 1.2,
        MarketCondition.BEARISH: 0.7,
        MarketCondition.NEUTRAL: 0.9,
        MarketCondition.VOLATILE: 0.6,
    },
}


def market_condition_overrides_for(
    risk_tolerance: RiskTolerance,
) -> dict[MarketCondition, MarketConditionOverride]:
    """Preset overrides, all enabled, for a risk tolerance."""
    return {
        condition: MarketConditionOverride(enabled=True, adjusted_risk=risk)
        for condition, risk in _PRESET_RISK[risk_tolerance].items()
    }
