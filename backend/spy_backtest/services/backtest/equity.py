"""Cash/equity bookkeeping and drawdown analysis for a backtest run."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from spy_backtest.services.backtest.engine import SimulatedTrade


@dataclass
class EquityPoint:
    date: date
    equity: float
    cash: Optional[float] = None
    positions_value: Optional[float] = None


@dataclass
class MaxDrawdown:
    amount: float
    percentage: float
    start_date: date  # peak before the worst trough
    end_date: date    # the worst trough, not the recovery


@dataclass
class DrawdownPeriod:
    start_date: date
    trough_date: date
    end_date: Optional[date]  # None while still under water
    depth_percent: float
    duration_days: int
    recovery_days: Optional[int]


@dataclass
class EquityTracker:
    """Cash balance plus the daily equity curve.

    equity = cash + mark-to-market of every active trade.
    """
    cash: float
    curve: list[EquityPoint] = field(default_factory=list)

    def reserve(self, amount: float) -> None:
        self.cash -= amount

    def release(self, amount: float) -> None:
        self.cash += amount

    def open_positions_value(self, active_trades: Iterable[SimulatedTrade]) -> float:
        return sum(t.market_value for t in active_trades)

    def record(self, day: date, active_trades: Iterable[SimulatedTrade]) -> EquityPoint:
        positions_value = self.open_positions_value(active_trades)
        point = EquityPoint(
            date=day,
            equity=self.cash + positions_value,
            cash=self.cash,
            positions_value=positions_value,
        )
        self.curve.append(point)
        return point

    @property
    def equity(self) -> float:
        return self.curve[-1].equity if self.curve else self.cash


def calculate_max_drawdown(equity_curve: list[EquityPoint]) -> MaxDrawdown:
    """Worst peak-to-trough decline, found in one forward scan."""
    if not equity_curve:
        raise ValueError("equity curve is empty")

    peak = equity_curve[0].equity
    peak_date = equity_curve[0].date
    max_dd = 0.0
    max_dd_pct = 0.0
    dd_start = equity_curve[0].date
    dd_end = equity_curve[0].date

    for point in equity_curve:
        if point.equity > peak:
            peak = point.equity
            peak_date = point.date

        drawdown = peak - point.equity
        drawdown_pct = drawdown / peak * 100 if peak > 0 else 0.0
        if drawdown_pct > max_dd_pct:
            max_dd = drawdown
            max_dd_pct = drawdown_pct
            dd_start = peak_date
            dd_end = point.date

    return MaxDrawdown(amount=max_dd, percentage=max_dd_pct, start_date=dd_start, end_date=dd_end)


def find_drawdown_periods(equity_curve: list[EquityPoint]) -> list[DrawdownPeriod]:
    """Every peak-to-recovery episode, in chronological order."""
    periods: list[DrawdownPeriod] = []
    if not equity_curve:
        return periods

    peak = equity_curve[0].equity
    peak_date = equity_curve[0].date
    trough = peak
    trough_date = peak_date
    under_water = False

    for point in equity_curve[1:]:
        if point.equity >= peak:
            if under_water:
                periods.append(DrawdownPeriod(
                    start_date=peak_date,
                    trough_date=trough_date,
                    end_date=point.date,
                    depth_percent=(peak - trough) / peak * 100 if peak > 0 else 0.0,
                    duration_days=(point.date - peak_date).days,
                    recovery_days=(point.date - trough_date).days,
                ))
                under_water = False
            peak = point.equity
            peak_date = point.date
            trough = peak
            trough_date = peak_date
            continue

        under_water = True
        if point.equity < trough:
            trough = point.equity
            trough_date = point.date

    if under_water:
        last = equity_curve[-1]
        periods.append(DrawdownPeriod(
            start_date=peak_date,
            trough_date=trough_date,
            end_date=None,
            depth_percent=(peak - trough) / peak * 100 if peak > 0 else 0.0,
            duration_days=(last.date - peak_date).days,
            recovery_days=None,
        ))

    return periods


def calculate_annualized_return(
    initial_capital: float,
    final_capital: float,
    start_date: date,
    end_date: date,
) -> float:
    years = (end_date - start_date).days / 365
    if years <= 0:
        return 0.0
    if final_capital <= 0:
        return -1.0
    return (final_capital / initial_capital) ** (1 / years) - 1
