"""
Executor Module - collaborator interfaces for quotes and swaps.

QuoteProvider and ExecutionService are the seams to the outside world.
QuoteRouter applies an explicit primary/fallback order over providers.
PaperExecutionService simulates fills at quoted prices.
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Optional

from errors import ExecutionFailedError, QuoteUnavailableError
from retry import ConnectionHealthMonitor

logger = logging.getLogger(__name__)


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class SwapResult:
    """Outcome of a swap request."""
    success: bool
    token_in: str
    token_out: str
    amount_in: float
    amount_out: float = 0.0
    tx_ref: Optional[str] = None
    error: Optional[str] = None
    mode: str = "paper"
    timestamp: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class LiquidityAnalysis:
    """How much of token_in the pool can absorb within max_slippage."""
    token_in: str
    token_out: str
    max_slippage: float
    max_safe_amount: Optional[float]

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================================
# INTERFACES
# ============================================================================

class QuoteProvider(ABC):
    """Source of spot prices (base currency per token)."""

    name: str = "quote"

    @abstractmethod
    async def get_price(self, asset: str, base: str) -> float:
        """Return the price of one `asset` in `base`. Raises QuoteUnavailableError."""
        pass


class ExecutionService(ABC):
    """Swap execution and liquidity analysis."""

    @abstractmethod
    async def execute_swap(
        self,
        wallet: Optional[str],
        token_in: str,
        token_out: str,
        amount: float,
        max_slippage: float,
    ) -> SwapResult:
        """Swap `amount` of token_in for token_out. Failures come back as success=False."""
        pass

    @abstractmethod
    async def analyze_liquidity(self, token_in: str, token_out: str, max_slippage: float) -> LiquidityAnalysis:
        """Largest token_in amount tradable within max_slippage."""
        pass


async def execute_swap_bounded(
    executor: ExecutionService,
    wallet: Optional[str],
    token_in: str,
    token_out: str,
    amount: float,
    max_slippage: float,
    timeout: float,
) -> SwapResult:
    """
    Run execute_swap under a timeout and insist on a usable fill.

    Raises:
        ExecutionFailedError: timeout, transport error, or an unsuccessful
            or empty fill
    """
    label = f"{token_in[:10]} -> {token_out[:10]}"
    try:
        result = await asyncio.wait_for(
            executor.execute_swap(wallet, token_in, token_out, amount, max_slippage),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        raise ExecutionFailedError(f"Swap {label} timed out after {timeout}s")
    except ExecutionFailedError:
        raise
    except Exception as e:
        raise ExecutionFailedError(f"Swap {label} failed: {e}") from e

    if not result.success or result.amount_out <= 0:
        raise ExecutionFailedError(f"Swap {label} failed: {result.error}", tx_ref=result.tx_ref)
    return result


# ============================================================================
# QUOTE ROUTING
# ============================================================================

class StaticQuoteProvider(QuoteProvider):
    """In-memory prices; set_price() to move the market."""

    def __init__(self, prices: Optional[dict[str, float]] = None, name: str = "static"):
        self.name = name
        self._prices = {k.lower(): v for k, v in (prices or {}).items()}

    def set_price(self, asset: str, price: float) -> None:
        self._prices[asset.lower()] = price

    def remove_price(self, asset: str) -> None:
        self._prices.pop(asset.lower(), None)

    async def get_price(self, asset: str, base: str) -> float:
        price = self._prices.get(asset.lower())
        if price is None or price <= 0:
            raise QuoteUnavailableError(asset, f"no {self.name} price")
        return price


class QuoteRouter(QuoteProvider):
    """
    Ordered fallback over providers.

    Providers are tried strictly in list order; the first positive price
    wins. Each call is bounded by `timeout`.
    """

    name = "router"

    def __init__(
        self,
        providers: list[QuoteProvider],
        timeout: float = 10.0,
        health: Optional[ConnectionHealthMonitor] = None,
    ):
        if not providers:
            raise ValueError("QuoteRouter needs at least one provider")
        self.providers = list(providers)
        self.timeout = timeout
        self.health = health or ConnectionHealthMonitor(stale_threshold_sec=120.0)
        for provider in self.providers:
            self.health.register_connection(provider.name)

    async def get_price(self, asset: str, base: str) -> float:
        errors = []
        for provider in self.providers:
            try:
                price = await asyncio.wait_for(provider.get_price(asset, base), timeout=self.timeout)
            except asyncio.TimeoutError:
                self.health.mark_error(provider.name)
                errors.append(f"{provider.name}: timeout")
                continue
            except Exception as e:
                self.health.mark_error(provider.name)
                errors.append(f"{provider.name}: {e}")
                continue

            if price and price > 0:
                self.health.mark_success(provider.name)
                return price
            errors.append(f"{provider.name}: invalid price {price}")

        logger.debug(f"All quote providers failed for {asset}: {'; '.join(errors)}")
        raise QuoteUnavailableError(asset, "; ".join(errors))


# ============================================================================
# PAPER EXECUTION
# ============================================================================

class PaperExecutionService(ExecutionService):
    """
    Simulated execution - no real swaps.

    Buys (token_in == base) fill at amount / price, sells at amount * price,
    both reduced by `slippage_pct`. `liquidity_caps` optionally limits the
    safe amount per token pair side.
    """

    def __init__(
        self,
        quotes: QuoteProvider,
        base_token: str,
        slippage_pct: float = 0.0,
        liquidity_caps: Optional[dict[str, float]] = None,
    ):
        self.quotes = quotes
        self.base_token = base_token.lower()
        self.slippage_pct = slippage_pct
        self.liquidity_caps = {k.lower(): v for k, v in (liquidity_caps or {}).items()}
        self.history: list[SwapResult] = []

    def set_liquidity_cap(self, token: str, max_amount: Optional[float]) -> None:
        if max_amount is None:
            self.liquidity_caps.pop(token.lower(), None)
        else:
            self.liquidity_caps[token.lower()] = max_amount

    async def analyze_liquidity(self, token_in: str, token_out: str, max_slippage: float) -> LiquidityAnalysis:
        pool_token = token_out if token_in.lower() == self.base_token else token_in
        return LiquidityAnalysis(
            token_in=token_in,
            token_out=token_out,
            max_slippage=max_slippage,
            max_safe_amount=self.liquidity_caps.get(pool_token.lower()),
        )

    async def execute_swap(
        self,
        wallet: Optional[str],
        token_in: str,
        token_out: str,
        amount: float,
        max_slippage: float,
    ) -> SwapResult:
        result = SwapResult(
            success=False,
            token_in=token_in,
            token_out=token_out,
            amount_in=amount,
            timestamp=time.time(),
        )
        if amount <= 0:
            result.error = "Amount must be positive"
            return result

        if max_slippage is not None and self.slippage_pct > max_slippage:
            result.error = f"Slippage {self.slippage_pct}% exceeds max {max_slippage}%"
            return result

        is_buy = token_in.lower() == self.base_token
        asset = token_out if is_buy else token_in
        try:
            price = await self.quotes.get_price(asset, self.base_token)
        except QuoteUnavailableError as e:
            result.error = str(e)
            logger.warning(f"Paper swap failed: {e}")
            return result

        fill = 1 - self.slippage_pct / 100
        result.amount_out = (amount / price if is_buy else amount * price) * fill
        result.success = True
        result.tx_ref = f"paper_{uuid.uuid4().hex[:16]}"
        self.history.append(result)

        logger.info(
            f"Paper swap executed: {amount:.6f} {token_in[:10]} -> {result.amount_out:.6f} {token_out[:10]} "
            f"@ {price:.8f}"
        )
        return result
