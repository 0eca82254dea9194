"""Daily SPY, VIX and option-chain data for backtesting.

Three suppliers share one interface, ``fetch_historical_data``:
  - SyntheticDataSource: seeded random walk (same seed -> same series)
  - CsvDataSource:       already-materialized daily bars from local CSV files
  - MarketDataCache:     pre-fetched data, reused across optimizer runs

Option chains are not stored anywhere; every day's chain is rebuilt from the
close with the pricing model, so contracts only match across days by
(strike, type, expiration date).
"""

import bisect
import logging
import random
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Optional, Protocol, Sequence

import pandas as pd

from spy_backtest.config import Settings
from spy_backtest.models import OptionType
from spy_backtest.services.backtest.pricing import quote_option

logger = logging.getLogger(__name__)
settings = Settings()

FRIDAY = 4
SHORT_DATED_DAYS = 21  # chains at or below this use weekly greek ranges


class UnknownDataSourceError(ValueError):
    """Raised when a data source id does not map to a supplier."""
    def __init__(self, data_source_id: str):
        self.data_source_id = data_source_id
        super().__init__(
            f"Unknown data source '{data_source_id}' (expected one of {sorted(DATA_SOURCE_IDS)})"
        )


@dataclass
class PriceBar:
    date: date
    open: float
    high: float
    low: float
    close: float
    volume: int


@dataclass
class VixPoint:
    date: date
    value: float


@dataclass(frozen=True)
class ContractKey:
    strike: float
    type: OptionType
    expiration_date: date


@dataclass
class OptionContract:
    id: str
    strike: float
    expiration_date: date
    type: OptionType
    premium: float
    implied_volatility: float
    open_interest: int
    volume: int
    delta: float
    gamma: float
    theta: float
    vega: float

    @property
    def key(self) -> ContractKey:
        return ContractKey(self.strike, self.type, self.expiration_date)


@dataclass
class DailyOptionChain:
    date: date
    options: list[OptionContract] = field(default_factory=list)

    def by_key(self) -> dict[ContractKey, OptionContract]:
        return {o.key: o for o in self.options}


@dataclass
class HistoricalData:
    price_data: list[PriceBar]
    options_data: list[DailyOptionChain]
    vix_data: list[VixPoint]

    def window(self, start_date: date, end_date: date) -> "HistoricalData":
        return HistoricalData(
            price_data=[b for b in self.price_data if start_date <= b.date <= end_date],
            options_data=[c for c in self.options_data if start_date <= c.date <= end_date],
            vix_data=[v for v in self.vix_data if start_date <= v.date <= end_date],
        )


class DataSource(Protocol):
    def fetch_historical_data(
        self, start_date: date, end_date: date, data_source_id: str
    ) -> HistoricalData:
        ...


# ── Expiration calendar ──────────────────────────────────────────


def next_friday(day: date) -> date:
    """Friday on or after ``day``."""
    return day + timedelta(days=(FRIDAY - day.weekday()) % 7)


def third_friday(year: int, month: int) -> date:
    first = date(year, month, 1)
    return next_friday(first) + timedelta(days=14)


def monthly_expirations(day: date, count: int = 2) -> list[date]:
    """The next ``count`` standard monthly expirations on or after ``day``."""
    result: list[date] = []
    year, month = day.year, day.month
    while len(result) < count:
        expiry = third_friday(year, month)
        if expiry >= day:
            result.append(expiry)
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return result


def roll_to_trading_day(expiry: date, trading_days: Sequence[date]) -> date:
    """Move an expiry that falls on a market holiday back to the previous session.

    Expiries past the end of the calendar are left alone.
    """
    if not trading_days or expiry > trading_days[-1]:
        return expiry
    i = bisect.bisect_right(trading_days, expiry)
    return trading_days[i - 1] if i else expiry


def chain_expirations(day: date, trading_days: Optional[Sequence[date]] = None) -> list[date]:
    """Expiries listed on ``day``: the next two Fridays and the next two monthlies.

    With a sorted ``trading_days`` calendar, holiday expiries move to the
    session before, the way listed SPY options do.
    """
    weekly = next_friday(day)
    expiries = {weekly, weekly + timedelta(days=7), *monthly_expirations(day)}
    if trading_days:
        expiries = {roll_to_trading_day(e, trading_days) for e in expiries}
    return sorted(e for e in expiries if e >= day)


def _jitter(rng: Optional[random.Random], low: float, high: float) -> float:
    if rng is None:
        return (low + high) / 2
    return low + rng.random() * (high - low)


# ── Option chain ─────────────────────────────────────────────────


def build_option_chain(
    day: date,
    spot: float,
    rng: Optional[random.Random] = None,
    strike_interval: Optional[float] = None,
    strikes_each_side: Optional[int] = None,
    trading_days: Optional[Sequence[date]] = None,
) -> DailyOptionChain:
    """Build the day's chain: strike grid around ATM x {CALL, PUT} x expirations.

    Premium and delta come from the pricing model. IV, greeks, open interest
    and volume are cosmetic; they get jitter when an rng is passed.
    """
    interval = strike_interval or settings.STRIKE_INTERVAL
    each_side = settings.STRIKES_EACH_SIDE if strikes_each_side is None else strikes_each_side
    atm_strike = round(spot / interval) * interval

    strikes = [
        atm_strike + offset * interval
        for offset in range(-each_side, each_side + 1)
        if atm_strike + offset * interval > 0
    ]

    options: list[OptionContract] = []
    for expiry in chain_expirations(day, trading_days):
        short_dated = (expiry - day).days <= SHORT_DATED_DAYS
        for strike in strikes:
            for option_type in (OptionType.CALL, OptionType.PUT):
                quote = quote_option(option_type, spot, strike, expiry, day, rng=rng)
                if short_dated:
                    iv = _jitter(rng, 0.20, 0.30)
                    oi = int(_jitter(rng, 1000, 6000))
                    vol = int(_jitter(rng, 200, 2200))
                    gamma = _jitter(rng, 0.05, 0.10)
                    theta = -_jitter(rng, 0.05, 0.10)
                    vega = _jitter(rng, 0.10, 0.20)
                else:
                    iv = _jitter(rng, 0.18, 0.26)
                    oi = int(_jitter(rng, 2000, 10000))
                    vol = int(_jitter(rng, 500, 3500))
                    gamma = _jitter(rng, 0.03, 0.07)
                    theta = -_jitter(rng, 0.03, 0.07)
                    vega = _jitter(rng, 0.15, 0.25)

                options.append(OptionContract(
                    id=f"{option_type.value.lower()}-{day.isoformat()}-{strike:g}-{expiry.isoformat()}",
                    strike=strike,
                    expiration_date=expiry,
                    type=option_type,
                    premium=quote.price,
                    implied_volatility=round(iv, 4),
                    open_interest=oi,
                    volume=vol,
                    delta=quote.delta,
                    gamma=round(gamma, 4),
                    theta=round(theta, 4),
                    vega=round(vega, 4),
                ))

    return DailyOptionChain(date=day, options=options)


# ── Suppliers ────────────────────────────────────────────────────


def _trading_days(start_date: date, end_date: date) -> list[date]:
    days = []
    day = start_date
    while day <= end_date:
        if day.weekday() < 5:
            days.append(day)
        day += timedelta(days=1)
    return days


class SyntheticDataSource:
    """Seeded random-walk SPY/VIX series with generated option chains."""

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed

    def fetch_historical_data(
        self, start_date: date, end_date: date, data_source_id: str = "synthetic"
    ) -> HistoricalData:
        rng = random.Random(self.seed)
        days = _trading_days(start_date, end_date)

        price = settings.SYNTHETIC_START_PRICE
        volatility = settings.SYNTHETIC_DAILY_VOLATILITY
        price_data: list[PriceBar] = []
        for day in days:
            daily_change = (rng.random() - 0.5) * volatility * price
            open_ = price
            close = open_ + daily_change
            high = max(open_, close) + rng.random() * volatility * price / 2
            low = min(open_, close) - rng.random() * volatility * price / 2
            volume = int(50_000_000 + rng.random() * 50_000_000)
            price_data.append(PriceBar(
                date=day,
                open=round(open_, 2),
                high=round(high, 2),
                low=round(low, 2),
                close=round(close, 2),
                volume=volume,
            ))
            price = close

        vix = settings.SYNTHETIC_START_VIX
        vix_data: list[VixPoint] = []
        for day in days:
            vix = max(settings.SYNTHETIC_MIN_VIX, vix + (rng.random() - 0.5))
            vix_data.append(VixPoint(date=day, value=round(vix, 2)))

        options_data = [build_option_chain(b.date, b.close, rng=rng, trading_days=days) for b in price_data]

        logger.info(
            f"Synthetic data ({data_source_id}, seed={self.seed}): "
            f"{len(price_data)} days {start_date} to {end_date}"
        )
        return HistoricalData(price_data=price_data, options_data=options_data, vix_data=vix_data)


class CsvDataSource:
    """Daily bars from local CSV files.

    Price CSV format: Date,Open,High,Low,Close,Volume
    VIX CSV format:   Date,Close
    """

    def __init__(self, price_csv: str, vix_csv: Optional[str] = None):
        self.price_csv = price_csv
        self.vix_csv = vix_csv

    def fetch_historical_data(
        self, start_date: date, end_date: date, data_source_id: str = "csv"
    ) -> HistoricalData:
        df = pd.read_csv(self.price_csv, parse_dates=["Date"])
        df = df.sort_values("Date")
        calendar = [ts.date() for ts in df["Date"]]
        logger.info(f"Loaded {len(df)} rows from {self.price_csv}")

        price_data: list[PriceBar] = []
        for _, row in df.iterrows():
            day = row["Date"].date()
            if day < start_date or day > end_date:
                continue
            price_data.append(PriceBar(
                date=day,
                open=float(row["Open"]),
                high=float(row["High"]),
                low=float(row["Low"]),
                close=float(row["Close"]),
                volume=int(row["Volume"]),
            ))

        vix_data: list[VixPoint] = []
        if self.vix_csv:
            vix_df = pd.read_csv(self.vix_csv, parse_dates=["Date"]).sort_values("Date")
            for _, row in vix_df.iterrows():
                day = row["Date"].date()
                if start_date <= day <= end_date:
                    vix_data.append(VixPoint(date=day, value=float(row["Close"])))
        else:
            logger.warning(f"No VIX CSV given, using default VIX={settings.DEFAULT_VIX}")

        options_data = [build_option_chain(b.date, b.close, trading_days=calendar) for b in price_data]

        logger.info(
            f"CSV SPY daily: {len(price_data)} days, {len(vix_data)} VIX points "
            f"({start_date} to {end_date})"
        )
        return HistoricalData(price_data=price_data, options_data=options_data, vix_data=vix_data)


@dataclass
class MarketDataCache:
    """Pre-fetched market data to avoid regenerating it for every run."""
    data: HistoricalData

    def fetch_historical_data(
        self, start_date: date, end_date: date, data_source_id: str = "cache"
    ) -> HistoricalData:
        return self.data.window(start_date, end_date)


DATA_SOURCE_IDS = {"synthetic", "mock", "csv"}


def get_data_source(
    data_source_id: str,
    seed: Optional[int] = None,
    price_csv: Optional[str] = None,
    vix_csv: Optional[str] = None,
) -> DataSource:
    if data_source_id in ("synthetic", "mock"):
        return SyntheticDataSource(seed=seed)
    if data_source_id == "csv":
        if not price_csv:
            raise ValueError("csv data source requires a price CSV path")
        return CsvDataSource(price_csv, vix_csv)
    raise UnknownDataSourceError(data_source_id)
