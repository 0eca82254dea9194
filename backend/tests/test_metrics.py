import math
from datetime import date

import numpy as np
import pytest

from spy_backtest.models import CloseReason, OptionType
from spy_backtest.services.backtest.engine import SimulatedTrade
from spy_backtest.services.backtest.equity import EquityPoint
from spy_backtest.services.backtest.metrics import (
    calculate_performance_metrics,
    compute_annual_returns,
    compute_calmar_ratio,
    compute_kelly_percentage,
    compute_monthly_returns,
    compute_profit_factor,
    compute_sharpe_ratio,
    compute_sortino_ratio,
    compute_streaks,
)
from tests.mocks.mock_market import START, make_bar, trading_days


def _make_trade(n, exit_premium, opened_at=START, closed_at=date(2024, 1, 5), entry_premium=2.0):
    trade = SimulatedTrade(
        id=f"t-{n}",
        type=OptionType.CALL,
        strike=450.0,
        expiration_date=date(2024, 2, 16),
        entry_premium=entry_premium,
        current_premium=entry_premium,
        target_premium=entry_premium * 1.5,
        stop_premium=entry_premium * 0.75,
        quantity=1,
        opened_at=opened_at,
        confidence_score=0.7,
    )
    trade.mark(exit_premium)
    if closed_at is not None:
        reason = CloseReason.PROFIT_TARGET if exit_premium > entry_premium else CloseReason.STOP_LOSS
        trade.close(closed_at, reason)
    return trade


def _curve(values, start=START):
    return [EquityPoint(date=d, equity=v) for d, v in zip(trading_days(start, len(values)), values)]


def _bars(closes):
    return [make_bar(d, c) for d, c in zip(trading_days(START, len(closes)), closes)]


def test_profit_factor_sentinels():
    assert compute_profit_factor(100.0, 0.0) == math.inf
    assert compute_profit_factor(0.0, 0.0) == 0.0
    assert compute_profit_factor(150.0, 50.0) == 3.0


def test_kelly_percentage():
    # 60% winners, payoff 2:1 -> 0.6 - 0.4 / 2 = 40%
    assert compute_kelly_percentage(0.6, 200.0, 100.0) == pytest.approx(40.0)
    assert compute_kelly_percentage(0.6, 200.0, 0.0) == 0.0
    assert compute_kelly_percentage(0.0, 0.0, 100.0) == 0.0


def test_streaks_follow_open_order():
    trades = [
        _make_trade(1, 3.0, opened_at=date(2024, 1, 2)),
        _make_trade(4, 1.0, opened_at=date(2024, 1, 5)),
        _make_trade(2, 3.0, opened_at=date(2024, 1, 3)),
        _make_trade(3, 3.0, opened_at=date(2024, 1, 4)),
        _make_trade(5, 1.0, opened_at=date(2024, 1, 8)),
    ]
    assert compute_streaks(trades) == (3, 2)


def test_sharpe_zero_volatility_is_zero():
    assert compute_sharpe_ratio(0.25, 0.0) == 0.0


def test_sharpe_formula():
    expected = (0.12 - 0.02) / (0.01 * math.sqrt(252))
    assert compute_sharpe_ratio(0.12, 0.01) == pytest.approx(expected)


def test_sortino_uses_epsilon_without_losing_days():
    returns = np.array([0.01, 0.02, 0.0])
    assert compute_sortino_ratio(0.12, returns) == pytest.approx((0.12 - 0.02) / 0.0001)


def test_sortino_downside_deviation():
    returns = np.array([0.01, -0.02, 0.03, -0.01])
    downside = math.sqrt((0.02 ** 2 + 0.01 ** 2) / 2) * math.sqrt(252)
    assert compute_sortino_ratio(0.12, returns) == pytest.approx((0.12 - 0.02) / downside)


def test_calmar():
    assert compute_calmar_ratio(0.2, 10.0) == pytest.approx(2.0)
    assert compute_calmar_ratio(0.2, 0.0) == 0.2


def test_monthly_and_annual_buckets():
    curve = [
        EquityPoint(date=date(2023, 12, 28), equity=100.0),
        EquityPoint(date=date(2023, 12, 29), equity=110.0),
        EquityPoint(date=date(2024, 1, 2), equity=110.0),
        EquityPoint(date=date(2024, 1, 31), equity=99.0),
    ]
    monthly = compute_monthly_returns(curve)
    assert [m.month for m in monthly] == ["2023-12", "2024-01"]
    assert monthly[0].value == pytest.approx(0.10)
    assert monthly[1].value == pytest.approx(-0.10)

    annual = compute_annual_returns(curve)
    assert [a.year for a in annual] == [2023, 2024]
    assert annual[1].value == pytest.approx(-0.10)


def test_aggregate_trade_statistics():
    trades = [
        _make_trade(1, 3.0),   # +100
        _make_trade(2, 2.5),   # +50
        _make_trade(3, 1.5),   # -50
        _make_trade(4, 2.8, closed_at=None),  # still open, ignored
    ]
    curve = _curve([10_000, 10_050, 10_000, 10_180])
    m = calculate_performance_metrics(trades, curve, 10_000, START, curve[-1].date, _bars([450, 455, 450, 459]))

    assert m.total_trades == 3
    assert m.successful_trades == 2
    assert m.failed_trades == 1
    assert m.win_rate == pytest.approx(2 / 3)
    assert m.total_profit == pytest.approx(150)
    assert m.total_loss == pytest.approx(50)
    assert m.net_profit == pytest.approx(100)
    assert m.profit_factor == pytest.approx(3.0)
    assert m.average_win == pytest.approx(75)
    assert m.average_loss == pytest.approx(50)
    assert m.best_trade == pytest.approx(100)
    assert m.worst_trade == pytest.approx(-50)
    assert m.percentage_return == pytest.approx(1.0)
    assert m.average_holding_days == 3
    assert len(m.daily_returns) == 3
    assert m.benchmark_comparison.spy_return == pytest.approx(2.0)
    assert m.benchmark_comparison.outperformance == pytest.approx(1.8 - 2.0)


def test_aggregate_only_winners_gives_infinite_profit_factor():
    trades = [_make_trade(1, 3.0), _make_trade(2, 2.5)]
    curve = _curve([10_000, 10_150])
    m = calculate_performance_metrics(trades, curve, 10_000, START, curve[-1].date, _bars([450, 450]))
    assert m.profit_factor == math.inf
    assert m.kelly_percentage == 0.0
    assert m.consecutive_wins == 2
    assert m.consecutive_losses == 0


def test_aggregate_no_trades():
    curve = _curve([10_000, 10_000, 10_000])
    m = calculate_performance_metrics([], curve, 10_000, START, curve[-1].date, _bars([450, 450, 450]))
    assert m.total_trades == 0
    assert m.win_rate == 0.0
    assert m.profit_factor == 0.0
    assert m.returns_volatility == 0.0
    assert m.sharpe_ratio == 0.0
    assert m.max_drawdown == 0.0
