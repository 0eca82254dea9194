"""Simplified option pricing for daily backtesting.

Premium = intrinsic value + spot * vol * sqrt(T). This is a proxy, not
Black-Scholes: good enough to compare strategies against each other, not to
price contracts. Delta uses a three-zone step keyed on moneyness.
"""

import math
import random
from dataclasses import dataclass
from datetime import date
from typing import Optional

from spy_backtest.config import Settings
from spy_backtest.models import OptionType

settings = Settings()

MIN_YEARS_TO_EXPIRY = 1.0 / 525600  # 1 minute in years
DAYS_PER_YEAR = 365.0

# Moneyness band around the strike where delta is interpolated linearly
LOWER_MONEYNESS = 0.95
UPPER_MONEYNESS = 1.05

# (low, high) delta for the out-of-the-money and in-the-money zones
OTM_DELTA_ZONE = (0.2, 0.3)
ITM_DELTA_ZONE = (0.8, 0.9)


@dataclass
class OptionQuote:
    price: float
    delta: float


def years_to_expiry(expiration_date: date, as_of: date) -> float:
    years = (expiration_date - as_of).days / DAYS_PER_YEAR
    return max(years, MIN_YEARS_TO_EXPIRY)


def price_option(
    option_type: OptionType,
    spot: float,
    strike: float,
    expiration_date: date,
    as_of: date,
    volatility: Optional[float] = None,
) -> float:
    """Premium per share, rounded to the cent."""
    vol = settings.ASSUMED_VOLATILITY if volatility is None else volatility
    T = years_to_expiry(expiration_date, as_of)

    if option_type == OptionType.CALL:
        intrinsic = max(spot - strike, 0.0)
    else:
        intrinsic = max(strike - spot, 0.0)

    time_value = spot * vol * math.sqrt(T)
    return round(intrinsic + time_value, 2)


def _zone_delta(zone: tuple[float, float], rng: Optional[random.Random]) -> float:
    low, high = zone
    if rng is None:
        return (low + high) / 2
    return low + rng.random() * (high - low)


def estimate_delta(
    option_type: OptionType,
    spot: float,
    strike: float,
    rng: Optional[random.Random] = None,
) -> float:
    """Signed delta approximation (negative for puts).

    Outside the 0.95K..1.05K band the delta sits in a fixed zone; pass an rng
    to jitter it inside the zone, otherwise the zone midpoint is used.
    """
    if spot < strike * LOWER_MONEYNESS:
        # Spot well below strike: calls OTM, puts ITM
        call_zone, put_zone = OTM_DELTA_ZONE, ITM_DELTA_ZONE
    elif spot > strike * UPPER_MONEYNESS:
        call_zone, put_zone = ITM_DELTA_ZONE, OTM_DELTA_ZONE
    else:
        moneyness = (spot - strike) / strike
        if option_type == OptionType.CALL:
            return round(0.5 + moneyness, 4)
        return round(-(0.5 - moneyness), 4)

    if option_type == OptionType.CALL:
        return round(_zone_delta(call_zone, rng), 4)
    return round(-_zone_delta(put_zone, rng), 4)


def quote_option(
    option_type: OptionType,
    spot: float,
    strike: float,
    expiration_date: date,
    as_of: date,
    rng: Optional[random.Random] = None,
) -> OptionQuote:
    """Return both premium and delta for one contract."""
    return OptionQuote(
        price=price_option(option_type, spot, strike, expiration_date, as_of),
        delta=estimate_delta(option_type, spot, strike, rng=rng),
    )
