"""Performance metrics for a finished backtest.

Trade-level statistics use closed trades only. Trades still open at the end
of the run show up in the equity curve (and so in every return-based ratio)
but not in win rate, profit factor, streaks or Kelly.

Degenerate inputs resolve to sentinels instead of raising:
  profit factor with no losses -> inf (0 when there are no wins either)
  Sharpe with zero volatility  -> 0
  Sortino with no losing days  -> epsilon downside deviation
  Kelly with no losses         -> 0
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Optional

import numpy as np
import pandas as pd

from spy_backtest.config import Settings
from spy_backtest.models import TradeStatus
from spy_backtest.services.backtest.equity import (
    EquityPoint,
    MaxDrawdown,
    calculate_annualized_return,
    calculate_max_drawdown,
)
from spy_backtest.services.backtest.market_data import PriceBar

if TYPE_CHECKING:
    from spy_backtest.services.backtest.engine import SimulatedTrade

settings = Settings()


@dataclass
class DailyReturn:
    date: date
    value: float


@dataclass
class MonthlyReturn:
    month: str  # YYYY-MM
    value: float


@dataclass
class AnnualReturn:
    year: int
    value: float


@dataclass
class BenchmarkComparison:
    spy_return: float       # percent
    outperformance: float   # percentage points


@dataclass
class PerformanceMetrics:
    total_trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    successful_trades: int = 0
    failed_trades: int = 0

    net_profit: float = 0.0
    total_profit: float = 0.0
    total_loss: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0
    average_holding_days: float = 0.0

    max_drawdown: float = 0.0  # percent
    returns_volatility: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    risk_adjusted_return: float = 0.0

    consecutive_wins: int = 0
    consecutive_losses: int = 0

    daily_returns: list[DailyReturn] = field(default_factory=list)
    monthly_returns: list[MonthlyReturn] = field(default_factory=list)
    annual_returns: list[AnnualReturn] = field(default_factory=list)

    kelly_percentage: float = 0.0
    dollar_return: float = 0.0
    percentage_return: float = 0.0
    benchmark_comparison: BenchmarkComparison = field(
        default_factory=lambda: BenchmarkComparison(spy_return=0.0, outperformance=0.0)
    )


# ── Building blocks ──────────────────────────────────────────────


def compute_profit_factor(gross_profit: float, gross_loss: float) -> float:
    if gross_loss == 0:
        return math.inf if gross_profit > 0 else 0.0
    return gross_profit / gross_loss


def compute_kelly_percentage(win_rate: float, average_win: float, average_loss: float) -> float:
    if win_rate <= 0 or average_loss <= 0 or average_win <= 0:
        return 0.0
    return (win_rate - (1 - win_rate) / (average_win / average_loss)) * 100


def compute_streaks(closed_trades: list[SimulatedTrade]) -> tuple[int, int]:
    """Longest (winning, losing) runs, in the order trades were opened."""
    longest_wins = longest_losses = 0
    wins = losses = 0
    for trade in sorted(closed_trades, key=lambda t: t.opened_at):
        if trade.profit > 0:
            wins += 1
            losses = 0
            longest_wins = max(longest_wins, wins)
        else:
            losses += 1
            wins = 0
            longest_losses = max(longest_losses, losses)
    return longest_wins, longest_losses


def compute_daily_returns(equity_curve: list[EquityPoint]) -> list[DailyReturn]:
    if len(equity_curve) < 2:
        return []
    equity = np.array([p.equity for p in equity_curve], dtype=float)
    returns = equity[1:] / equity[:-1] - 1
    return [
        DailyReturn(date=p.date, value=float(r))
        for p, r in zip(equity_curve[1:], returns)
    ]


def _equity_series(equity_curve: list[EquityPoint]) -> pd.Series:
    return pd.Series(
        [p.equity for p in equity_curve],
        index=pd.DatetimeIndex([pd.Timestamp(p.date) for p in equity_curve]),
    )


def compute_monthly_returns(equity_curve: list[EquityPoint]) -> list[MonthlyReturn]:
    """Per calendar month: last equity of the month / first equity of the month - 1."""
    if not equity_curve:
        return []
    series = _equity_series(equity_curve)
    return [
        MonthlyReturn(month=str(period), value=float(group.iloc[-1] / group.iloc[0] - 1))
        for period, group in series.groupby(series.index.to_period("M"))
    ]


def compute_annual_returns(equity_curve: list[EquityPoint]) -> list[AnnualReturn]:
    if not equity_curve:
        return []
    series = _equity_series(equity_curve)
    return [
        AnnualReturn(year=int(year), value=float(group.iloc[-1] / group.iloc[0] - 1))
        for year, group in series.groupby(series.index.year)
    ]


def compute_sharpe_ratio(annualized_return: float, returns_volatility: float) -> float:
    if returns_volatility == 0:
        return 0.0
    annual_vol = returns_volatility * math.sqrt(settings.TRADING_DAYS_PER_YEAR)
    return (annualized_return - settings.RISK_FREE_RATE) / annual_vol


def compute_sortino_ratio(annualized_return: float, returns: np.ndarray) -> float:
    negative = returns[returns < 0]
    if negative.size:
        downside = math.sqrt(float(np.mean(negative ** 2))) * math.sqrt(settings.TRADING_DAYS_PER_YEAR)
    else:
        downside = settings.SORTINO_EPSILON
    return (annualized_return - settings.RISK_FREE_RATE) / downside


def compute_calmar_ratio(annualized_return: float, max_drawdown_percent: float) -> float:
    if max_drawdown_percent > 0:
        return annualized_return / (max_drawdown_percent / 100)
    return annualized_return


def compute_benchmark_return(price_data: list[PriceBar]) -> float:
    """Buy-and-hold return of the underlying, in percent."""
    if len(price_data) < 2 or price_data[0].close == 0:
        return 0.0
    return (price_data[-1].close / price_data[0].close - 1) * 100


# ── Aggregate ────────────────────────────────────────────────────


def calculate_performance_metrics(
    trades: list[SimulatedTrade],
    equity_curve: list[EquityPoint],
    initial_capital: float,
    start_date: date,
    end_date: date,
    price_data: list[PriceBar],
    max_drawdown: Optional[MaxDrawdown] = None,
) -> PerformanceMetrics:
    closed = [t for t in trades if t.status == TradeStatus.CLOSED]
    wins = [t for t in closed if t.profit > 0]
    losses = [t for t in closed if t.profit <= 0]

    total_trades = len(closed)
    win_rate = len(wins) / total_trades if total_trades else 0.0

    total_profit = sum(t.profit for t in wins)
    total_loss = abs(sum(t.profit for t in losses))
    net_profit = total_profit - total_loss

    average_win = total_profit / len(wins) if wins else 0.0
    average_loss = total_loss / len(losses) if losses else 0.0

    daily_returns = compute_daily_returns(equity_curve)
    returns = np.array([r.value for r in daily_returns], dtype=float)
    returns_volatility = float(np.std(returns)) if returns.size else 0.0

    final_equity = equity_curve[-1].equity if equity_curve else initial_capital
    annualized_return = calculate_annualized_return(initial_capital, final_equity, start_date, end_date)

    if max_drawdown is None:
        max_drawdown = calculate_max_drawdown(equity_curve)

    sharpe_ratio = compute_sharpe_ratio(annualized_return, returns_volatility)
    consecutive_wins, consecutive_losses = compute_streaks(closed)

    holding_days = [(t.closed_at - t.opened_at).days for t in closed if t.closed_at]
    spy_return = compute_benchmark_return(price_data)
    strategy_return = (final_equity / initial_capital - 1) * 100

    return PerformanceMetrics(
        total_trades=total_trades,
        win_rate=win_rate,
        profit_factor=compute_profit_factor(total_profit, total_loss),
        successful_trades=len(wins),
        failed_trades=len(losses),
        net_profit=net_profit,
        total_profit=total_profit,
        total_loss=total_loss,
        average_win=average_win,
        average_loss=average_loss,
        best_trade=max((t.profit for t in wins), default=0.0),
        worst_trade=min((t.profit for t in losses), default=0.0),
        average_holding_days=sum(holding_days) / len(holding_days) if holding_days else 0.0,
        max_drawdown=max_drawdown.percentage,
        returns_volatility=returns_volatility,
        sharpe_ratio=sharpe_ratio,
        sortino_ratio=compute_sortino_ratio(annualized_return, returns),
        calmar_ratio=compute_calmar_ratio(annualized_return, max_drawdown.percentage),
        risk_adjusted_return=sharpe_ratio,
        consecutive_wins=consecutive_wins,
        consecutive_losses=consecutive_losses,
        daily_returns=daily_returns,
        monthly_returns=compute_monthly_returns(equity_curve),
        annual_returns=compute_annual_returns(equity_curve),
        kelly_percentage=compute_kelly_percentage(win_rate, average_win, average_loss),
        dollar_return=net_profit,
        percentage_return=net_profit / initial_capital * 100,
        benchmark_comparison=BenchmarkComparison(
            spy_return=spy_return,
            outperformance=strategy_return - spy_return,
        ),
    )
