from __future__ import annotations

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from spy_backtest.models import (
    MarketCondition,
    OptionExpiry,
    OptionTypeFilter,
    PositionSizingType,
    RiskTolerance,
)


# --- Strategy ---


class TradingStrategy(BaseModel):
    id: str
    name: str
    description: str = ""
    risk_level: int = Field(5, ge=1, le=10)
    option_type: OptionTypeFilter = OptionTypeFilter.BOTH
    expiry_preference: list[OptionExpiry] = Field(..., min_length=1)
    delta_range: tuple[float, float] = (0.3, 0.7)
    max_position_size: float = Field(..., gt=0, description="Max dollars per position")
    max_loss_per_trade: float = Field(25.0, ge=0, le=100, description="Stop-loss %")
    profit_target: float = Field(50.0, gt=0, description="Profit target %")
    market_condition: MarketCondition = MarketCondition.NEUTRAL
    average_holding_period: float = Field(5.0, ge=0, description="Days")
    success_rate: float = Field(0.6, ge=0, le=1)

    model_config = {"frozen": True}

    @field_validator("delta_range")
    @classmethod
    def validate_delta_range(cls, v: tuple[float, float]) -> tuple[float, float]:
        low, high = v
        if not 0 <= low <= high <= 1:
            raise ValueError(f"delta_range must satisfy 0 <= min <= max <= 1, got {v}")
        return v

    @property
    def risk_profile(self) -> RiskTolerance:
        if self.risk_level <= 3:
            return RiskTolerance.CONSERVATIVE
        if self.risk_level <= 7:
            return RiskTolerance.MODERATE
        return RiskTolerance.AGGRESSIVE


# --- Settings ---


class PositionSizing(BaseModel):
    type: PositionSizingType = PositionSizingType.PERCENTAGE
    value: float = Field(5.0, ge=0, description="Dollars, % of capital, or Kelly multiplier")


class MarketConditionOverride(BaseModel):
    enabled: bool = False
    adjusted_risk: float = Field(1.0, ge=0)


class BacktestingSettings(BaseModel):
    start_date: date
    end_date: date
    initial_capital: float = Field(100_000.0, gt=0)
    data_source: str = "synthetic"
    include_commissions: bool = True
    commission_per_trade: float = Field(0.65, ge=0)
    include_taxes: bool = False
    tax_rate: float = Field(0.25, ge=0, le=1)

    @model_validator(mode="after")
    def validate_window(self) -> "BacktestingSettings":
        if self.start_date > self.end_date:
            raise ValueError(
                f"start_date {self.start_date} is after end_date {self.end_date}"
            )
        return self


class AITradingSettings(BaseModel):
    max_simultaneous_trades: int = Field(3, ge=1)
    max_daily_trades: int = Field(5, ge=1)
    minimum_confidence_score: float = Field(0.65, ge=0, le=1)
    position_sizing: PositionSizing = Field(default_factory=PositionSizing)
    market_condition_overrides: dict[MarketCondition, MarketConditionOverride] = Field(
        default_factory=dict
    )
    backtesting_settings: BacktestingSettings


# --- Defaults ---


def create_default_strategy() -> TradingStrategy:
    return TradingStrategy(
        id="default-strategy",
        name="Default Strategy",
        description="A basic trading strategy for testing",
        risk_level=5,
        option_type=OptionTypeFilter.BOTH,
        expiry_preference=[OptionExpiry.WEEKLY, OptionExpiry.MONTHLY],
        delta_range=(0.3, 0.7),
        max_position_size=10_000.0,
        max_loss_per_trade=25.0,
        profit_target=50.0,
        market_condition=MarketCondition.NEUTRAL,
        average_holding_period=5,
        success_rate=0.6,
    )


def create_default_settings(
    start_date: date,
    end_date: date,
    initial_capital: float = 100_000.0,
    data_source: str = "synthetic",
    overrides: Optional[dict[MarketCondition, MarketConditionOverride]] = None,
) -> AITradingSettings:
    if overrides is None:
        # Halve risk in volatile markets
        overrides = {
            MarketCondition.VOLATILE: MarketConditionOverride(enabled=True, adjusted_risk=0.5),
        }
    return AITradingSettings(
        max_simultaneous_trades=3,
        max_daily_trades=5,
        minimum_confidence_score=0.65,
        position_sizing=PositionSizing(type=PositionSizingType.PERCENTAGE, value=5.0),
        market_condition_overrides=overrides,
        backtesting_settings=BacktestingSettings(
            start_date=start_date,
            end_date=end_date,
            initial_capital=initial_capital,
            data_source=data_source,
        ),
    )
