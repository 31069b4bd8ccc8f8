"""
Pytest fixtures for the test suite.
"""
import asyncio
import pytest
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import WLD_ADDRESS
from cost_basis_ledger import CostBasisLedger
from events import EventBus
from executor import PaperExecutionService, StaticQuoteProvider
from price_store import PriceStore
from strategy_manager import StrategyManager

ASSET = "0x" + "ab" * 20
OTHER_ASSET = "0x" + "cd" * 20
START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced clock for deterministic timestamps."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class GatedExecutionService(PaperExecutionService):
    """Paper execution whose swaps block until `gate` is set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = asyncio.Event()
        self.started = asyncio.Event()
        self.calls = 0

    async def execute_swap(self, wallet, token_in, token_out, amount, max_slippage):
        self.calls += 1
        self.started.set()
        await self.gate.wait()
        return await super().execute_swap(wallet, token_in, token_out, amount, max_slippage)


def seed_prices(store, address, prices, start, step=60.0):
    """Ingest prices at fixed intervals starting at `start`. Returns last timestamp."""
    ts = start
    for i, price in enumerate(prices):
        ts = start + i * step
        store.ingest(address, price, timestamp=ts)
    return ts


@pytest.fixture
def clock():
    """Create a fake clock."""
    return FakeClock()


@pytest.fixture
def bus():
    """Create an event bus."""
    return EventBus()


@pytest.fixture
def store(bus, clock):
    """Create a price store on the fake clock."""
    return PriceStore(bus=bus, clock=clock)


@pytest.fixture
def ledger(bus, clock):
    """Create a cost-basis ledger on the fake clock."""
    return CostBasisLedger(bus=bus, base_token_address=WLD_ADDRESS, clock=clock)


@pytest.fixture
def quotes():
    """Create a static quote provider priced at 0.1 for the test asset."""
    return StaticQuoteProvider({ASSET: 0.1})


@pytest.fixture
def executor(quotes):
    """Create a paper execution service without slippage."""
    return PaperExecutionService(quotes, WLD_ADDRESS)


@pytest.fixture
def manager(store, ledger, quotes, executor, bus, clock):
    """Create a strategy manager wired to paper execution."""
    return StrategyManager(
        store,
        ledger,
        quotes,
        executor,
        bus=bus,
        base_token=WLD_ADDRESS,
        clock=clock,
    )
