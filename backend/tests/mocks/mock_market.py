from datetime import date, timedelta

from spy_backtest.models import MarketCondition, OptionExpiry, OptionType, OptionTypeFilter
from spy_backtest.schemas import (
    AITradingSettings,
    BacktestingSettings,
    MarketConditionOverride,
    PositionSizing,
    TradingStrategy,
)
from spy_backtest.services.backtest.market_data import (
    DailyOptionChain,
    HistoricalData,
    OptionContract,
    PriceBar,
    VixPoint,
    build_option_chain,
)

START = date(2024, 1, 2)  # a Tuesday


def trading_days(start: date, count: int) -> list[date]:
    days = []
    day = start
    while len(days) < count:
        if day.weekday() < 5:
            days.append(day)
        day += timedelta(days=1)
    return days


def make_bar(day: date, close: float) -> PriceBar:
    return PriceBar(date=day, open=close, high=close, low=close, close=close, volume=1_000_000)


def make_contract(
    strike=450.0,
    expiration_date=date(2024, 2, 16),
    option_type=OptionType.CALL,
    premium=2.00,
    delta=0.5,
) -> OptionContract:
    return OptionContract(
        id=f"{option_type.value.lower()}-{strike:g}-{expiration_date.isoformat()}",
        strike=strike,
        expiration_date=expiration_date,
        type=option_type,
        premium=premium,
        implied_volatility=0.2,
        open_interest=1000,
        volume=100,
        delta=delta,
        gamma=0.05,
        theta=-0.05,
        vega=0.15,
    )


def make_historical_data(closes: list[float], start=START, vix=15.0) -> HistoricalData:
    """Daily bars over consecutive weekdays with chains from the pricing model."""
    days = trading_days(start, len(closes))
    return HistoricalData(
        price_data=[make_bar(d, c) for d, c in zip(days, closes)],
        options_data=[build_option_chain(d, c) for d, c in zip(days, closes)],
        vix_data=[VixPoint(date=d, value=vix) for d in days],
    )


def make_scripted_data(chains: list[list[OptionContract]], start=START, close=450.0) -> HistoricalData:
    """One trading day per entry in ``chains``, each offering exactly those contracts."""
    days = trading_days(start, len(chains))
    return HistoricalData(
        price_data=[make_bar(d, close) for d in days],
        options_data=[DailyOptionChain(date=d, options=opts) for d, opts in zip(days, chains)],
        vix_data=[VixPoint(date=d, value=15.0) for d in days],
    )


def make_strategy(**overrides) -> TradingStrategy:
    fields = dict(
        id="test-strategy",
        name="Test Strategy",
        risk_level=5,
        option_type=OptionTypeFilter.CALL,
        expiry_preference=[OptionExpiry.MONTHLY],
        delta_range=(0.3, 0.7),
        max_position_size=10_000.0,
        max_loss_per_trade=25.0,
        profit_target=10.0,
        success_rate=0.6,
    )
    fields.update(overrides)
    return TradingStrategy(**fields)


def make_settings(start_date: date, end_date: date, **overrides) -> AITradingSettings:
    fields = dict(
        max_simultaneous_trades=3,
        max_daily_trades=5,
        minimum_confidence_score=0.65,
        position_sizing=PositionSizing(type="percentage", value=5.0),
        market_condition_overrides={
            MarketCondition.VOLATILE: MarketConditionOverride(enabled=True, adjusted_risk=0.5),
        },
        backtesting_settings=BacktestingSettings(
            start_date=start_date,
            end_date=end_date,
            initial_capital=100_000.0,
        ),
    )
    fields.update(overrides)
    return AITradingSettings(**fields)
