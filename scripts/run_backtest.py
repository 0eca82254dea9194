"""
SPY Options Backtester
======================
Runs the default strategy over synthetic or CSV market data, or sweeps a
parameter grid and ranks the variants by Sharpe ratio.

USAGE:
  # Single backtest on seeded synthetic data
  python scripts/run_backtest.py backtest --start 2024-01-02 --end 2024-06-28 --seed 42

  # Backtest on local CSV bars
  python scripts/run_backtest.py backtest --data-source csv --price-csv data/spy.csv --vix-csv data/vix.csv

  # Parameter sweep
  python scripts/run_backtest.py optimize --delta-ranges 0.3-0.5,0.4-0.6 \
      --stop-losses 15,25 --profit-targets 30,50 --top-n 5 --output results.json
"""

import argparse
import json
import logging
import os
import sys
import time
from dataclasses import asdict
from datetime import date

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "backend"))

from spy_backtest.config import Settings
from spy_backtest.schemas import create_default_settings, create_default_strategy
from spy_backtest.services.backtest.engine import BacktestResult, run_backtest
from spy_backtest.services.backtest.market_data import get_data_source
from spy_backtest.services.backtest.optimizer import ParameterRanges, optimize_strategy

settings = Settings()


# ── Argument parsing ──────────────────────────────────────────────


def _float_list(value: str) -> list[float]:
    return [float(v) for v in value.split(",") if v.strip()]


def _delta_ranges(value: str) -> list[tuple[float, float]]:
    """'0.3-0.5,0.4-0.6' -> [(0.3, 0.5), (0.4, 0.6)]"""
    ranges = []
    for part in value.split(","):
        low, high = part.split("-")
        ranges.append((float(low), float(high)))
    return ranges


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="SPY Options Backtester")
    sub = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--start", type=date.fromisoformat, default=date(2024, 1, 2),
                        help="First simulated day, YYYY-MM-DD (default: 2024-01-02)")
    common.add_argument("--end", type=date.fromisoformat, default=date(2024, 12, 31),
                        help="Last simulated day, YYYY-MM-DD (default: 2024-12-31)")
    common.add_argument("--capital", type=float, default=100_000.0,
                        help="Initial capital (default: 100000)")
    common.add_argument("--seed", type=int, default=None,
                        help="Seed for the synthetic data source")
    common.add_argument("--data-source", default="synthetic", choices=["synthetic", "mock", "csv"],
                        help="Market data source (default: synthetic)")
    common.add_argument("--price-csv", default=None,
                        help="Daily SPY bars: Date,Open,High,Low,Close,Volume")
    common.add_argument("--vix-csv", default=None,
                        help="Daily VIX closes: Date,Close")
    common.add_argument("--output", default=None,
                        help="Path to save JSON results (optional)")

    sub.add_parser("backtest", parents=[common], help="Run one backtest")

    opt = sub.add_parser("optimize", parents=[common], help="Sweep a parameter grid")
    opt.add_argument("--delta-ranges", type=_delta_ranges, default=None,
                     help="Comma-separated min-max pairs, e.g. 0.3-0.5,0.4-0.6")
    opt.add_argument("--position-sizes", type=_float_list, default=None,
                     help="Max dollars per position, comma-separated")
    opt.add_argument("--stop-losses", type=_float_list, default=None,
                     help="Stop-loss percents, comma-separated")
    opt.add_argument("--profit-targets", type=_float_list, default=None,
                     help="Profit-target percents, comma-separated")
    opt.add_argument("--workers", type=int, default=0,
                     help="Parallel workers (default: CPU count)")
    opt.add_argument("--top-n", type=int, default=10,
                     help="Number of ranked variants to report (default: 10)")

    return parser.parse_args(argv)


# ── Reporting ─────────────────────────────────────────────────────


def _summary(result: BacktestResult) -> dict:
    m = result.performance_metrics
    return {
        "strategy_id": result.strategy_id,
        "final_capital": round(result.final_capital, 2),
        "total_return": round(result.total_return, 2),
        "annualized_return": round(result.annualized_return * 100, 2),
        "total_trades": m.total_trades,
        "win_rate": round(m.win_rate * 100, 1),
        "profit_factor": m.profit_factor,
        "sharpe_ratio": round(m.sharpe_ratio, 3),
        "sortino_ratio": round(m.sortino_ratio, 3),
        "max_drawdown": round(m.max_drawdown, 2),
        "spy_return": round(result.market_benchmark_return, 2),
        "close_reasons": result.close_reasons,
    }


def print_result(result: BacktestResult):
    s = _summary(result)
    print(f"\n  Strategy:        {result.strategy_name} ({result.strategy_id})")
    print(f"  Period:          {result.start_date} to {result.end_date}")
    print(f"  Final capital:   ${s['final_capital']:,.2f} ({s['total_return']:+.2f}%)")
    print(f"  Annualized:      {s['annualized_return']:+.2f}%")
    print(f"  Trades:          {s['total_trades']} closed, WR={s['win_rate']:.1f}%, PF={s['profit_factor']:.2f}")
    print(f"  Sharpe/Sortino:  {s['sharpe_ratio']:.3f} / {s['sortino_ratio']:.3f}")
    print(f"  Max drawdown:    {s['max_drawdown']:.2f}%")
    print(f"  SPY buy & hold:  {s['spy_return']:+.2f}%")
    print(f"  Exit reasons:    {s['close_reasons']}")


def save_json_report(payload: dict, filepath: str):
    with open(filepath, "w") as f:
        json.dump({"generated": date.today().isoformat(), **payload}, f, indent=2, default=str)
    print(f"JSON report saved to: {filepath}")


# ── Main ──────────────────────────────────────────────────────────


def run_single(args):
    strategy = create_default_strategy()
    trading_settings = create_default_settings(args.start, args.end, args.capital, args.data_source)
    data_source = get_data_source(args.data_source, seed=args.seed,
                                  price_csv=args.price_csv, vix_csv=args.vix_csv)
    bt = trading_settings.backtesting_settings

    result = run_backtest(
        strategy,
        trading_settings,
        args.start,
        args.end,
        args.capital,
        include_commissions=bt.include_commissions,
        commission_per_trade=bt.commission_per_trade,
        include_taxes=bt.include_taxes,
        tax_rate=bt.tax_rate,
        data_source=data_source,
    )
    print_result(result)

    if args.output:
        save_json_report({"result": asdict(result)}, args.output)


def run_optimize(args):
    base = create_default_strategy()
    trading_settings = create_default_settings(args.start, args.end, args.capital, args.data_source)
    data_source = get_data_source(args.data_source, seed=args.seed,
                                  price_csv=args.price_csv, vix_csv=args.vix_csv)
    ranges = ParameterRanges(
        delta_range=args.delta_ranges,
        max_position_size=args.position_sizes,
        max_loss_per_trade=args.stop_losses,
        profit_target=args.profit_targets,
    )

    t0 = time.time()
    entries = optimize_strategy(
        base,
        trading_settings,
        ranges,
        data_source=data_source,
        max_workers=args.workers or None,
    )
    elapsed = time.time() - t0

    print(f"\n{'='*80}")
    print(f"  OPTIMIZATION RESULTS ({len(entries)} variants in {elapsed:.1f}s)")
    print(f"{'='*80}")
    for entry in entries[: args.top_n]:
        s = _summary(entry.result)
        p = entry.strategy
        print(f"\n  #{entry.rank} {p.id}  Sharpe={s['sharpe_ratio']:.3f}  "
              f"Return={s['total_return']:+.2f}%  Trades={s['total_trades']}  WR={s['win_rate']:.1f}%")
        print(f"     delta={p.delta_range}  max_position=${p.max_position_size:,.0f}  "
              f"stop={p.max_loss_per_trade}%  target={p.profit_target}%")

    if args.output:
        save_json_report({
            "total_variants": len(entries),
            "elapsed_seconds": round(elapsed, 1),
            "results": [
                {"rank": e.rank, "strategy": e.strategy.model_dump(mode="json"), **_summary(e.result)}
                for e in entries[: args.top_n]
            ],
        }, args.output)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    print("=" * 60)
    print(f"  {settings.APP_NAME}")
    print("=" * 60)

    if args.command == "optimize":
        run_optimize(args)
    else:
        run_single(args)


if __name__ == "__main__":
    main()
