"""Backtesting engine for daily SPY options strategies.

Walks the price/option/VIX timeline one trading day at a time. Each day:

  1. Active trades are marked to the day's chain and closed when an exit
     triggers, in this priority order:
       P1: Expiry       (date >= expiration)
       P2: Stop loss    (mark <= stop premium)
       P3: Profit target (mark >= target premium)
     Stop is checked before target, so a day that satisfies both exits on
     the stop. A trade whose contract is missing from the chain is held
     unmarked and no trigger is evaluated.
  2. New trades are admitted from the top candidates of the chain while the
     simultaneous-trade and per-day limits allow.
  3. Equity = cash + mark-to-market of active trades is recorded.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from spy_backtest.config import Settings
from spy_backtest.models import (
    CloseReason,
    MarketCondition,
    OptionExpiry,
    OptionType,
    OptionTypeFilter,
    PositionSizingType,
    TradeStatus,
)
from spy_backtest.schemas import AITradingSettings, TradingStrategy
from spy_backtest.services.backtest.equity import (
    DrawdownPeriod,
    EquityPoint,
    EquityTracker,
    MaxDrawdown,
    calculate_annualized_return,
    calculate_max_drawdown,
    find_drawdown_periods,
)
from spy_backtest.services.backtest.market_conditions import (
    classify_market_conditions,
    risk_multiplier_for,
)
from spy_backtest.services.backtest.market_data import (
    ContractKey,
    DataSource,
    HistoricalData,
    MarketDataCache,
    OptionContract,
    get_data_source,
)
from spy_backtest.services.backtest.metrics import (
    PerformanceMetrics,
    calculate_performance_metrics,
)

logger = logging.getLogger(__name__)
settings = Settings()

CONTRACT_MULTIPLIER = 100  # shares per contract

# Days-to-expiry bucket boundaries
SHORT_TERM_MAX_DAYS = 7
WEEKLY_MAX_DAYS = 21
QUARTERLY_MIN_DAYS = 63


class InvalidBacktestConfigError(ValueError):
    """Raised before simulation when the inputs cannot produce a meaningful run."""


class TradeClosedError(RuntimeError):
    """Raised when something tries to re-mark or re-close a closed trade."""


# ── Data classes ──────────────────────────────────────────────────


@dataclass
class SimulatedTrade:
    id: str
    type: OptionType
    strike: float
    expiration_date: date
    entry_premium: float
    current_premium: float
    target_premium: float
    stop_premium: float
    quantity: int
    opened_at: date
    confidence_score: float

    status: TradeStatus = TradeStatus.ACTIVE
    closed_at: Optional[date] = None
    close_reason: Optional[CloseReason] = None
    profit: float = 0.0
    profit_percentage: float = 0.0
    commission_paid: float = 0.0
    tax_paid: float = 0.0

    @property
    def key(self) -> ContractKey:
        return ContractKey(self.strike, self.type, self.expiration_date)

    @property
    def cost_basis(self) -> float:
        return self.entry_premium * CONTRACT_MULTIPLIER * self.quantity

    @property
    def market_value(self) -> float:
        return self.current_premium * CONTRACT_MULTIPLIER * self.quantity

    def mark(self, premium: float) -> None:
        if self.status == TradeStatus.CLOSED:
            raise TradeClosedError(f"Trade {self.id} is closed; its premium is final")
        self.current_premium = premium
        per_contract = premium - self.entry_premium
        self.profit = per_contract * CONTRACT_MULTIPLIER * self.quantity
        self.profit_percentage = per_contract / self.entry_premium * 100 if self.entry_premium else 0.0

    def close(self, day: date, reason: CloseReason) -> None:
        if self.status == TradeStatus.CLOSED:
            raise TradeClosedError(f"Trade {self.id} already closed on {self.closed_at}")
        self.status = TradeStatus.CLOSED
        self.closed_at = day
        self.close_reason = reason


@dataclass
class TradingCosts:
    include_commissions: bool = True
    commission_per_trade: float = 0.65  # per contract
    include_taxes: bool = False
    tax_rate: float = 0.25

    def commission_for(self, quantity: int) -> float:
        return self.commission_per_trade * quantity if self.include_commissions else 0.0

    def tax_for(self, profit: float) -> float:
        return self.tax_rate * max(profit, 0.0) if self.include_taxes else 0.0


@dataclass
class BacktestResult:
    strategy_id: str
    strategy_name: str
    risk_profile: str
    start_date: date
    end_date: date
    initial_capital: float
    final_capital: float
    trades: list[SimulatedTrade] = field(default_factory=list)
    equity_curve: list[EquityPoint] = field(default_factory=list)
    performance_metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    max_drawdown: Optional[MaxDrawdown] = None
    drawdowns: list[DrawdownPeriod] = field(default_factory=list)
    annualized_return: float = 0.0
    total_return: float = 0.0  # percent
    market_benchmark_return: float = 0.0  # percent
    close_reasons: dict[str, int] = field(default_factory=dict)


# ── Validation ────────────────────────────────────────────────────


def validate_backtest_inputs(
    start_date: date,
    end_date: date,
    initial_capital: float,
    costs: TradingCosts,
) -> None:
    if initial_capital is None or initial_capital <= 0:
        raise InvalidBacktestConfigError(f"initial_capital must be positive, got {initial_capital}")
    if start_date > end_date:
        raise InvalidBacktestConfigError(f"start_date {start_date} is after end_date {end_date}")
    if costs.commission_per_trade < 0:
        raise InvalidBacktestConfigError(
            f"commission_per_trade must be >= 0, got {costs.commission_per_trade}"
        )
    if not 0 <= costs.tax_rate <= 1:
        raise InvalidBacktestConfigError(f"tax_rate must be within [0, 1], got {costs.tax_rate}")


# ── Candidate selection & sizing ──────────────────────────────────


def matches_expiry_preference(days_to_expiry: int, preference: OptionExpiry) -> bool:
    if preference == OptionExpiry.SHORT_TERM:
        return days_to_expiry <= SHORT_TERM_MAX_DAYS
    if preference == OptionExpiry.WEEKLY:
        return SHORT_TERM_MAX_DAYS < days_to_expiry <= WEEKLY_MAX_DAYS
    if preference == OptionExpiry.MONTHLY:
        return days_to_expiry > WEEKLY_MAX_DAYS
    return days_to_expiry > QUARTERLY_MIN_DAYS


def find_candidates(
    strategy: TradingStrategy,
    options: list[OptionContract],
    day: date,
    limit: Optional[int] = None,
) -> list[OptionContract]:
    """Contracts passing the strategy filters, highest |delta| first."""
    limit = settings.MAX_CANDIDATES_PER_DAY if limit is None else limit
    min_delta, max_delta = strategy.delta_range

    filtered: list[OptionContract] = []
    for option in options:
        if strategy.option_type != OptionTypeFilter.BOTH and option.type.value != strategy.option_type.value:
            continue
        abs_delta = abs(option.delta)
        if abs_delta < min_delta or abs_delta > max_delta:
            continue
        days_to_expiry = (option.expiration_date - day).days
        if days_to_expiry < 1:
            continue  # never open a contract expiring today
        if not any(matches_expiry_preference(days_to_expiry, p) for p in strategy.expiry_preference):
            continue
        filtered.append(option)

    filtered.sort(key=lambda o: abs(o.delta), reverse=True)
    return filtered[:limit]


def confidence_score(delta: float) -> float:
    return min(settings.MAX_CONFIDENCE_SCORE, 0.5 + abs(delta) * 0.4)


def kelly_fraction(strategy: TradingStrategy) -> float:
    """Kelly bet fraction from the strategy's expected win rate and payoff."""
    p = strategy.success_rate
    if strategy.max_loss_per_trade <= 0:
        return p
    b = strategy.profit_target / strategy.max_loss_per_trade
    return max(0.0, p - (1 - p) / b)


def sizing_budget(
    available_capital: float,
    adjusted_risk: float,
    strategy: TradingStrategy,
    trading_settings: AITradingSettings,
) -> float:
    """Dollars the position-sizing rule allows for one new trade."""
    sizing = trading_settings.position_sizing
    if sizing.type == PositionSizingType.FIXED:
        return sizing.value * adjusted_risk
    if sizing.type == PositionSizingType.KELLY:
        return available_capital * adjusted_risk * kelly_fraction(strategy) * sizing.value
    return available_capital * adjusted_risk * sizing.value / 100


def size_position(premium: float, max_position_size: float, budget: float) -> int:
    contract_cost = premium * CONTRACT_MULTIPLIER
    if contract_cost <= 0:
        return 0
    max_contracts = math.floor(max_position_size / contract_cost)
    return max(0, min(max_contracts, math.floor(budget / contract_cost)))


# ── Exit evaluation ───────────────────────────────────────────────


def evaluate_exit(trade: SimulatedTrade, mark: float, day: date) -> Optional[CloseReason]:
    """Exit trigger for today's mark, or None to keep holding."""
    # P1: Expiry
    if day >= trade.expiration_date:
        return CloseReason.EXPIRY
    # P2: Stop loss (wins ties with the target)
    if mark <= trade.stop_premium:
        return CloseReason.STOP_LOSS
    # P3: Profit target
    if mark >= trade.target_premium:
        return CloseReason.PROFIT_TARGET
    return None


def _close_trade(
    trade: SimulatedTrade,
    day: date,
    reason: CloseReason,
    tracker: EquityTracker,
    costs: TradingCosts,
) -> None:
    trade.close(day, reason)
    commission = costs.commission_for(trade.quantity)
    tax = costs.tax_for(trade.profit)
    trade.commission_paid += commission
    trade.tax_paid = tax
    tracker.release(trade.market_value - commission - tax)
    logger.debug(
        f"{day} close {trade.id} {reason.value}: {trade.type.value} {trade.strike:g} "
        f"${trade.entry_premium:.2f} -> ${trade.current_premium:.2f}, P&L ${trade.profit:.2f}"
    )


def _process_closures(
    active: list[SimulatedTrade],
    chain: dict[ContractKey, OptionContract],
    day: date,
    tracker: EquityTracker,
    costs: TradingCosts,
) -> list[SimulatedTrade]:
    """Mark and close what triggers today; returns the trades still active."""
    still_active: list[SimulatedTrade] = []
    for trade in active:
        contract = chain.get(trade.key)
        if contract is None:
            # Data gap: hold the position at its last mark
            still_active.append(trade)
            continue

        trade.mark(contract.premium)
        reason = evaluate_exit(trade, contract.premium, day)
        if reason is None:
            still_active.append(trade)
        else:
            _close_trade(trade, day, reason, tracker, costs)
    return still_active


# ── Main entry point ──────────────────────────────────────────────


def run_backtest(
    strategy: TradingStrategy,
    trading_settings: AITradingSettings,
    start_date: date,
    end_date: date,
    initial_capital: float,
    include_commissions: bool = True,
    commission_per_trade: float = 0.65,
    include_taxes: bool = False,
    tax_rate: float = 0.25,
    data_source: Optional[DataSource] = None,
    market_data: Optional[MarketDataCache] = None,
    seed: Optional[int] = None,
) -> BacktestResult:
    costs = TradingCosts(
        include_commissions=include_commissions,
        commission_per_trade=commission_per_trade,
        include_taxes=include_taxes,
        tax_rate=tax_rate,
    )
    validate_backtest_inputs(start_date, end_date, initial_capital, costs)

    data_source_id = trading_settings.backtesting_settings.data_source
    if market_data is not None:
        data = market_data.fetch_historical_data(start_date, end_date, data_source_id)
    else:
        if data_source is None:
            data_source = get_data_source(data_source_id, seed=seed)
        data = data_source.fetch_historical_data(start_date, end_date, data_source_id)

    if len(data.price_data) < 2:
        raise InvalidBacktestConfigError(
            f"Need at least 2 trading days between {start_date} and {end_date}, "
            f"got {len(data.price_data)}"
        )

    logger.info(
        f"Starting backtest: {strategy.name} ({strategy.id}) {start_date} to {end_date}, "
        f"capital ${initial_capital:,.2f}"
    )
    return _simulate(strategy, trading_settings, data, start_date, end_date, initial_capital, costs)


def _simulate(
    strategy: TradingStrategy,
    trading_settings: AITradingSettings,
    data: HistoricalData,
    start_date: date,
    end_date: date,
    initial_capital: float,
    costs: TradingCosts,
) -> BacktestResult:
    price_data = data.price_data
    chains = {c.date: c for c in data.options_data}
    conditions = classify_market_conditions(price_data, data.vix_data)

    tracker = EquityTracker(cash=initial_capital)
    tracker.record(price_data[0].date, [])

    trades: list[SimulatedTrade] = []
    active: list[SimulatedTrade] = []

    for bar in price_data[1:]:
        day = bar.date
        daily_chain = chains.get(day)
        options = daily_chain.options if daily_chain else []
        chain_by_key = daily_chain.by_key() if daily_chain else {}

        condition = conditions.get(day, MarketCondition.NEUTRAL)
        adjusted_risk = risk_multiplier_for(condition, trading_settings)

        active = _process_closures(active, chain_by_key, day, tracker, costs)

        opened_today = 0
        for contract in find_candidates(strategy, options, day):
            if len(active) >= trading_settings.max_simultaneous_trades:
                break
            if opened_today >= trading_settings.max_daily_trades:
                break

            confidence = confidence_score(contract.delta)
            if confidence < trading_settings.minimum_confidence_score:
                continue

            budget = sizing_budget(tracker.cash, adjusted_risk, strategy, trading_settings)
            quantity = size_position(contract.premium, strategy.max_position_size, budget)
            if quantity < 1:
                continue

            commission = costs.commission_for(quantity)
            cost = contract.premium * CONTRACT_MULTIPLIER * quantity
            if cost + commission > tracker.cash:
                continue

            trade = SimulatedTrade(
                id=f"{strategy.id}-T{len(trades) + 1:04d}",
                type=contract.type,
                strike=contract.strike,
                expiration_date=contract.expiration_date,
                entry_premium=contract.premium,
                current_premium=contract.premium,
                target_premium=contract.premium * (1 + strategy.profit_target / 100),
                stop_premium=contract.premium * (1 - strategy.max_loss_per_trade / 100),
                quantity=quantity,
                opened_at=day,
                confidence_score=confidence,
                commission_paid=commission,
            )
            tracker.reserve(cost + commission)
            trades.append(trade)
            active.append(trade)
            opened_today += 1
            logger.debug(
                f"{day} open {trade.id}: {trade.quantity}x {trade.type.value} {trade.strike:g} "
                f"exp {trade.expiration_date} @ ${trade.entry_premium:.2f} "
                f"({condition.value}, risk x{adjusted_risk})"
            )

        tracker.record(day, active)

    return _build_result(strategy, trades, tracker, data, start_date, end_date, initial_capital)


def _build_result(
    strategy: TradingStrategy,
    trades: list[SimulatedTrade],
    tracker: EquityTracker,
    data: HistoricalData,
    start_date: date,
    end_date: date,
    initial_capital: float,
) -> BacktestResult:
    equity_curve = tracker.curve
    final_capital = equity_curve[-1].equity
    max_drawdown = calculate_max_drawdown(equity_curve)

    metrics = calculate_performance_metrics(
        trades,
        equity_curve,
        initial_capital,
        start_date,
        end_date,
        data.price_data,
        max_drawdown=max_drawdown,
    )

    close_reasons = Counter(t.close_reason.value for t in trades if t.close_reason is not None)

    result = BacktestResult(
        strategy_id=strategy.id,
        strategy_name=strategy.name,
        risk_profile=strategy.risk_profile.value,
        start_date=start_date,
        end_date=end_date,
        initial_capital=initial_capital,
        final_capital=final_capital,
        trades=trades,
        equity_curve=equity_curve,
        performance_metrics=metrics,
        max_drawdown=max_drawdown,
        drawdowns=find_drawdown_periods(equity_curve),
        annualized_return=calculate_annualized_return(initial_capital, final_capital, start_date, end_date),
        total_return=(final_capital / initial_capital - 1) * 100,
        market_benchmark_return=metrics.benchmark_comparison.spy_return,
        close_reasons=dict(close_reasons),
    )

    logger.info(
        f"Backtest complete: {metrics.total_trades} closed trades, "
        f"final ${final_capital:,.2f} ({result.total_return:+.2f}%), "
        f"Sharpe={metrics.sharpe_ratio:.2f}, max DD={max_drawdown.percentage:.1f}%"
    )
    return result
