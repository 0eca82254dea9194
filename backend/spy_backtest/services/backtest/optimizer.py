"""Parameter optimizer for the backtest engine.

Expands parameter ranges into the full grid of strategy variants, runs a
backtest per variant against one shared copy of the market data, and ranks
the results by Sharpe ratio.
"""

import itertools
import logging
import os
import threading
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Optional

from spy_backtest.config import Settings
from spy_backtest.schemas import AITradingSettings, TradingStrategy
from spy_backtest.services.backtest.engine import BacktestResult, run_backtest
from spy_backtest.services.backtest.market_data import (
    DataSource,
    HistoricalData,
    MarketDataCache,
    get_data_source,
)

logger = logging.getLogger(__name__)
settings = Settings()

PROGRESS_EVERY = 50


class OptimizationCancelled(Exception):
    """Raised when the caller's cancel event is set before the grid finishes."""
    def __init__(self, completed: int, total: int):
        self.completed = completed
        self.total = total
        super().__init__(f"Optimization cancelled after {completed}/{total} runs")


# ── Data classes ──────────────────────────────────────────────────


@dataclass
class ParameterRanges:
    """Values to sweep per parameter. None means keep the base strategy's value."""
    delta_range: Optional[list[tuple[float, float]]] = None
    max_position_size: Optional[list[float]] = None
    max_loss_per_trade: Optional[list[float]] = None
    profit_target: Optional[list[float]] = None


@dataclass
class OptimizationResultEntry:
    rank: int
    strategy: TradingStrategy
    result: BacktestResult

    @property
    def sharpe_ratio(self) -> float:
        return self.result.performance_metrics.sharpe_ratio


# ── Combination generation ────────────────────────────────────────


def generate_parameter_combinations(
    base: TradingStrategy,
    ranges: ParameterRanges,
) -> list[TradingStrategy]:
    """Cartesian product of the ranges, one strategy variant per combination."""
    axes = {
        "delta_range": ranges.delta_range or [base.delta_range],
        "max_position_size": ranges.max_position_size or [base.max_position_size],
        "max_loss_per_trade": ranges.max_loss_per_trade or [base.max_loss_per_trade],
        "profit_target": ranges.profit_target or [base.profit_target],
    }
    names = list(axes)

    variants: list[TradingStrategy] = []
    for n, values in enumerate(itertools.product(*axes.values()), start=1):
        update = dict(zip(names, values))
        update["id"] = f"{base.id}-v{n:03d}"
        # Re-validate: model_copy(update=...) skips field validators
        variants.append(TradingStrategy.model_validate({**base.model_dump(), **update}))
    return variants


# ── Parallel worker ───────────────────────────────────────────────

_worker_market_data: Optional[MarketDataCache] = None
_worker_settings: Optional[AITradingSettings] = None


def _init_worker(data: HistoricalData, trading_settings: AITradingSettings):
    global _worker_market_data, _worker_settings
    _worker_market_data = MarketDataCache(data=data)
    _worker_settings = trading_settings


def _run_variant(index: int, strategy: TradingStrategy) -> tuple[int, BacktestResult]:
    """Worker: run one backtest against the shared market data."""
    return index, _backtest_variant(strategy, _worker_settings, _worker_market_data)


def _backtest_variant(
    strategy: TradingStrategy,
    trading_settings: AITradingSettings,
    market_data: MarketDataCache,
) -> BacktestResult:
    bt = trading_settings.backtesting_settings
    return run_backtest(
        strategy,
        trading_settings,
        bt.start_date,
        bt.end_date,
        bt.initial_capital,
        include_commissions=bt.include_commissions,
        commission_per_trade=bt.commission_per_trade,
        include_taxes=bt.include_taxes,
        tax_rate=bt.tax_rate,
        market_data=market_data,
    )


def _check_cancelled(cancel_event: Optional[threading.Event], completed: int, total: int) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OptimizationCancelled(completed, total)


def _log_progress(completed: int, total: int) -> None:
    if completed % PROGRESS_EVERY == 0:
        logger.info(f"Optimizer: completed {completed}/{total}")


# ── Main optimizer ────────────────────────────────────────────────


def optimize_strategy(
    base: TradingStrategy,
    trading_settings: AITradingSettings,
    ranges: ParameterRanges,
    data_source: Optional[DataSource] = None,
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> list[OptimizationResultEntry]:
    t0 = time.time()
    bt = trading_settings.backtesting_settings

    if data_source is None:
        data_source = get_data_source(bt.data_source)
    logger.info(
        f"Optimizer: fetching data {bt.start_date} to {bt.end_date} source={bt.data_source}"
    )
    data = data_source.fetch_historical_data(bt.start_date, bt.end_date, bt.data_source)

    variants = generate_parameter_combinations(base, ranges)
    total = len(variants)
    logger.info(f"Optimizer: testing {total} parameter combinations for {base.id}")

    if max_workers is None:
        max_workers = settings.OPTIMIZER_MAX_WORKERS or os.cpu_count() or 4
    workers = max(1, min(max_workers, total))

    results: dict[int, BacktestResult] = {}
    if workers == 1:
        cache = MarketDataCache(data=data)
        for i, strategy in enumerate(variants):
            _check_cancelled(cancel_event, len(results), total)
            results[i] = _backtest_variant(strategy, trading_settings, cache)
            _log_progress(len(results), total)
    else:
        with ProcessPoolExecutor(
            max_workers=workers,
            initializer=_init_worker,
            initargs=(data, trading_settings),
        ) as pool:
            futures = [pool.submit(_run_variant, i, s) for i, s in enumerate(variants)]
            try:
                for future in as_completed(futures):
                    _check_cancelled(cancel_event, len(results), total)
                    index, result = future.result()
                    results[index] = result
                    _log_progress(len(results), total)
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

    # Stable on variant index for equal Sharpe ratios
    order = sorted(
        range(total),
        key=lambda i: results[i].performance_metrics.sharpe_ratio,
        reverse=True,
    )
    entries = [
        OptimizationResultEntry(rank=rank, strategy=variants[i], result=results[i])
        for rank, i in enumerate(order, start=1)
    ]

    elapsed = round(time.time() - t0, 1)
    best = entries[0].sharpe_ratio if entries else 0.0
    logger.info(
        f"Optimizer: {total} combos in {elapsed}s ({workers} workers). Best Sharpe={best:.3f}"
    )
    return entries
