import os

# Set test environment before any spy_backtest imports
os.environ["OPTIMIZER_MAX_WORKERS"] = "1"

import pytest

from spy_backtest.services.backtest.market_data import MarketDataCache
from tests.mocks.mock_market import make_contract, make_historical_data, make_scripted_data


@pytest.fixture
def flat_market():
    """30 weekdays (Jan 2 to Feb 12) with SPY pinned at 450."""
    return MarketDataCache(data=make_historical_data([450.0] * 30))


@pytest.fixture
def profit_target_market():
    """Day 1 offers one call at $2.00; day 2 marks it at $3.00 (+50%)."""
    return MarketDataCache(data=make_scripted_data([
        [],
        [make_contract(premium=2.00, delta=0.5)],
        # Delta outside the strategy range so day 2 only marks, never re-enters
        [make_contract(premium=3.00, delta=0.95)],
    ]))


@pytest.fixture
def stop_loss_market():
    """Day 1 offers one call at $2.00; day 2 marks it at $1.40 (-30%)."""
    return MarketDataCache(data=make_scripted_data([
        [],
        [make_contract(premium=2.00, delta=0.5)],
        [make_contract(premium=1.40, delta=0.95)],
    ]))


@pytest.fixture
def dip_then_target_market():
    """Day 1 buys at $2.00, day 2 dips to $1.40 (-30%), day 3 marks $3.00 (+50%)."""
    return MarketDataCache(data=make_scripted_data([
        [],
        [make_contract(premium=2.00, delta=0.5)],
        [make_contract(premium=1.40, delta=0.95)],
        [make_contract(premium=3.00, delta=0.95)],
    ]))
