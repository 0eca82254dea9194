import pytest

from spy_backtest.models import MarketCondition, RiskTolerance
from spy_backtest.schemas import MarketConditionOverride
from spy_backtest.services.backtest.market_conditions import (
    classify_condition,
    classify_market_conditions,
    market_condition_overrides_for,
    risk_multiplier_for,
)
from spy_backtest.services.backtest.market_data import VixPoint
from tests.mocks.mock_market import START, make_bar, make_settings, trading_days


@pytest.mark.parametrize("momentum, vix, expected", [
    (0.05, 30.0, MarketCondition.VOLATILE),   # volatility beats trend
    (0.03, 15.0, MarketCondition.BULLISH),
    (-0.03, 15.0, MarketCondition.BEARISH),
    (0.01, 15.0, MarketCondition.NEUTRAL),
    (0.02, 15.0, MarketCondition.NEUTRAL),    # threshold is exclusive
    (0.0, 25.0, MarketCondition.NEUTRAL),     # VIX threshold is exclusive
])
def test_classify_condition(momentum, vix, expected):
    assert classify_condition(momentum, vix) == expected


def _bars(closes):
    return [make_bar(d, c) for d, c in zip(trading_days(START, len(closes)), closes)]


def test_first_ten_days_are_neutral():
    bars = _bars([100 + 5 * i for i in range(15)])
    conditions = classify_market_conditions(bars, [])
    days = [b.date for b in bars]
    assert all(conditions[d] == MarketCondition.NEUTRAL for d in days[:10])
    # 150 / 100 - 1 = 50% over ten days
    assert conditions[days[10]] == MarketCondition.BULLISH


def test_falling_market_is_bearish():
    bars = _bars([100 - i for i in range(12)])
    conditions = classify_market_conditions(bars, [])
    assert conditions[bars[11].date] == MarketCondition.BEARISH


def test_high_vix_marks_volatile_even_early_days_stay_neutral():
    bars = _bars([100.0] * 12)
    vix = [VixPoint(date=b.date, value=40.0) for b in bars]
    conditions = classify_market_conditions(bars, vix)
    assert conditions[bars[0].date] == MarketCondition.NEUTRAL
    assert conditions[bars[11].date] == MarketCondition.VOLATILE


def test_missing_vix_uses_default():
    bars = _bars([100.0] * 12)
    vix = [VixPoint(date=bars[10].date, value=40.0)]
    conditions = classify_market_conditions(bars, vix)
    assert conditions[bars[10].date] == MarketCondition.VOLATILE
    assert conditions[bars[11].date] == MarketCondition.NEUTRAL


def test_risk_multiplier_only_for_enabled_overrides():
    settings = make_settings(
        START, START,
        market_condition_overrides={
            MarketCondition.VOLATILE: MarketConditionOverride(enabled=True, adjusted_risk=0.5),
            MarketCondition.BEARISH: MarketConditionOverride(enabled=False, adjusted_risk=0.2),
        },
    )
    assert risk_multiplier_for(MarketCondition.VOLATILE, settings) == 0.5
    assert risk_multiplier_for(MarketCondition.BEARISH, settings) == 1.0
    assert risk_multiplier_for(MarketCondition.BULLISH, settings) == 1.0


def test_preset_overrides():
    overrides = market_condition_overrides_for(RiskTolerance.CONSERVATIVE)
    assert all(o.enabled for o in overrides.values())
    assert overrides[MarketCondition.VOLATILE].adjusted_risk == 0.2
    assert market_condition_overrides_for(RiskTolerance.AGGRESSIVE)[MarketCondition.BULLISH].adjusted_risk == 1.2
