"""
Cost-Basis Ledger - weighted-average accounting per tracked asset.

Buys move the weighted average; sells realize profit against it and leave
the average unchanged. Invariant after every mutation:

    total_cost_basis == quantity_held * weighted_average_price
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from config import WLD_ADDRESS, normalize_address
from errors import ConfigValidationError, UnknownAssetError
from events import EventBus, EventType

logger = logging.getLogger(__name__)


class TradeType(Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class Trade:
    """An executed trade, priced in base currency per token"""
    timestamp: float
    type: TradeType
    price: float
    quantity: float
    value: float

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "type": self.type.value,
            "price": self.price,
            "quantity": self.quantity,
            "value": self.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Trade":
        return cls(
            timestamp=float(data["timestamp"]),
            type=TradeType(data["type"]),
            price=float(data["price"]),
            quantity=float(data["quantity"]),
            value=float(data["value"]),
        )


@dataclass
class AssetLedger:
    """Cost-basis state for one asset"""
    address: str
    symbol: str = ""
    discovery_price: float = 0.0
    added_at: float = 0.0

    quantity_held: float = 0.0
    weighted_average_price: float = 0.0
    total_cost_basis: float = 0.0

    trade_history: list[Trade] = field(default_factory=list)
    buy_count: int = 0
    sell_count: int = 0
    total_buy_value: float = 0.0
    total_sell_value: float = 0.0
    best_buy_price: float = 0.0
    worst_sell_price: float = 0.0
    sell_prices: list[float] = field(default_factory=list)
    average_buy_price: float = 0.0
    average_sell_price: float = 0.0

    realized_profit: float = 0.0
    unrealized_profit: float = 0.0
    current_price: float = 0.0

    last_trade_price: float = 0.0
    last_trade_type: Optional[str] = None
    last_trade_timestamp: float = 0.0
    is_traded: bool = False

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "symbol": self.symbol,
            "discovery_price": self.discovery_price,
            "added_at": self.added_at,
            "quantity_held": self.quantity_held,
            "weighted_average_price": self.weighted_average_price,
            "total_cost_basis": self.total_cost_basis,
            "trade_history": [t.to_dict() for t in self.trade_history],
            "buy_count": self.buy_count,
            "sell_count": self.sell_count,
            "total_buy_value": self.total_buy_value,
            "total_sell_value": self.total_sell_value,
            "best_buy_price": self.best_buy_price,
            "worst_sell_price": self.worst_sell_price,
            "sell_prices": list(self.sell_prices),
            "average_buy_price": self.average_buy_price,
            "average_sell_price": self.average_sell_price,
            "realized_profit": self.realized_profit,
            "unrealized_profit": self.unrealized_profit,
            "current_price": self.current_price,
            "last_trade_price": self.last_trade_price,
            "last_trade_type": self.last_trade_type,
            "last_trade_timestamp": self.last_trade_timestamp,
            "is_traded": self.is_traded,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AssetLedger":
        data = dict(data)
        data["trade_history"] = [Trade.from_dict(t) for t in data.get("trade_history", [])]
        data["sell_prices"] = list(data.get("sell_prices", []))
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class CostBasisLedger:
    """
    Owns every AssetLedger. record_trade() is the only mutator of holdings.

    Lookups on untracked assets log a warning and return None.
    """

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        base_token_address: str = WLD_ADDRESS,
        clock: Callable[[], float] = time.time,
    ):
        self.bus = bus
        self.base_token_address = base_token_address.lower()
        self.clock = clock
        self._ledgers: dict[str, AssetLedger] = {}

    # -------------------------------------------------------------------------
    # TRACKING
    # -------------------------------------------------------------------------

    def track_asset(self, address: str, symbol: str = "", discovery_price: float = 0.0) -> AssetLedger:
        """
        Start tracking an asset. Idempotent.

        Raises:
            ConfigValidationError: malformed address or the base token itself
        """
        key = normalize_address(address)
        if key == self.base_token_address:
            raise ConfigValidationError("Cannot track the base token against itself")

        ledger = self._ledgers.get(key)
        if ledger is not None:
            if symbol and not ledger.symbol:
                ledger.symbol = symbol
            if discovery_price > 0 and ledger.discovery_price <= 0:
                ledger.discovery_price = discovery_price
            return ledger

        ledger = AssetLedger(
            address=key,
            symbol=symbol,
            discovery_price=discovery_price,
            added_at=self.clock(),
            current_price=discovery_price,
        )
        self._ledgers[key] = ledger
        logger.info(f"Added {symbol or key} to ledger (discovery price {discovery_price:.8f})")
        return ledger

    def untrack_asset(self, address: str) -> bool:
        removed = self._ledgers.pop(address.lower(), None)
        if removed:
            logger.info(f"Removed {removed.symbol or removed.address} from ledger")
        return removed is not None

    def is_tracked(self, address: str) -> bool:
        return address.lower() in self._ledgers

    def assets(self) -> list[str]:
        return list(self._ledgers.keys())

    def get(self, address: str) -> Optional[AssetLedger]:
        ledger = self._ledgers.get(address.lower())
        if ledger is None:
            logger.warning(f"Ledger lookup for untracked asset {address}")
        return ledger

    # -------------------------------------------------------------------------
    # TRADES
    # -------------------------------------------------------------------------

    def record_trade(
        self,
        address: str,
        trade_type: TradeType,
        price: float,
        quantity: float,
        timestamp: Optional[float] = None,
    ) -> Trade:
        """
        Apply an executed trade to the asset's cost basis.

        Args:
            address: Asset address
            trade_type: TradeType.BUY or TradeType.SELL (or "buy"/"sell")
            price: Fill price in base currency per token
            quantity: Tokens bought or sold
            timestamp: Fill time, defaults to now

        Returns:
            The recorded Trade

        Raises:
            UnknownAssetError: asset is not tracked
            ValueError: non-positive price or quantity
        """
        ledger = self._ledgers.get(address.lower())
        if ledger is None:
            raise UnknownAssetError(address)

        trade_type = TradeType(trade_type)
        if price <= 0 or quantity <= 0:
            raise ValueError(f"Trade price and quantity must be positive (price={price}, quantity={quantity})")

        ts = self.clock() if timestamp is None else float(timestamp)
        trade = Trade(timestamp=ts, type=trade_type, price=price, quantity=quantity, value=price * quantity)
        ledger.trade_history.append(trade)

        if trade_type == TradeType.BUY:
            ledger.buy_count += 1
            ledger.total_buy_value += trade.value

            if ledger.quantity_held <= 0:
                ledger.weighted_average_price = price
                ledger.quantity_held = quantity
                ledger.total_cost_basis = trade.value
            else:
                new_cost = ledger.total_cost_basis + trade.value
                new_quantity = ledger.quantity_held + quantity
                ledger.weighted_average_price = new_cost / new_quantity
                ledger.quantity_held = new_quantity
                ledger.total_cost_basis = new_cost

            if ledger.best_buy_price == 0 or price < ledger.best_buy_price:
                ledger.best_buy_price = price
        else:
            ledger.sell_count += 1
            ledger.total_sell_value += trade.value
            ledger.sell_prices.append(price)

            if ledger.worst_sell_price == 0 or price > ledger.worst_sell_price:
                ledger.worst_sell_price = price

            ledger.realized_profit += trade.value - ledger.weighted_average_price * quantity
            ledger.quantity_held = max(0.0, ledger.quantity_held - quantity)
            ledger.total_cost_basis = ledger.weighted_average_price * ledger.quantity_held

        buys = [t.price for t in ledger.trade_history if t.type == TradeType.BUY]
        sells = [t.price for t in ledger.trade_history if t.type == TradeType.SELL]
        if buys:
            ledger.average_buy_price = sum(buys) / len(buys)
        if sells:
            ledger.average_sell_price = sum(sells) / len(sells)

        ledger.last_trade_price = price
        ledger.last_trade_type = trade_type.value
        ledger.last_trade_timestamp = ts
        ledger.is_traded = True
        self._update_unrealized(ledger)

        name = ledger.symbol or ledger.address
        logger.info(f"Trade recorded: {name} {trade_type.value.upper()} {quantity:.6f} @ {price:.8f}")
        logger.info(f"New average price for {name}: {ledger.weighted_average_price:.8f}")

        if self.bus:
            self.bus.publish(EventType.TRADE_RECORDED, {
                "asset": ledger.address,
                "symbol": ledger.symbol,
                "trade": trade.to_dict(),
                "quantity_held": ledger.quantity_held,
                "weighted_average_price": ledger.weighted_average_price,
                "realized_profit": ledger.realized_profit,
            })
        return trade

    def _update_unrealized(self, ledger: AssetLedger) -> None:
        if ledger.quantity_held > 0 and ledger.current_price > 0:
            ledger.unrealized_profit = ledger.quantity_held * ledger.current_price - ledger.total_cost_basis
        elif ledger.quantity_held <= 0:
            ledger.unrealized_profit = 0.0

    def mark_price(self, address: str, price: float) -> Optional[float]:
        """Update the latest market price and return unrealized profit"""
        ledger = self._ledgers.get(address.lower())
        if ledger is None or price <= 0:
            return None
        ledger.current_price = price
        self._update_unrealized(ledger)
        return ledger.unrealized_profit

    # -------------------------------------------------------------------------
    # QUERIES
    # -------------------------------------------------------------------------

    def is_good_buy_price(self, address: str, price: float) -> bool:
        """
        Untraded assets: price must be below the discovery price.
        Traded assets: price must be below the weighted average and below
        every previous sell price.
        """
        ledger = self.get(address)
        if ledger is None:
            return False

        if not ledger.is_traded:
            return ledger.discovery_price > 0 and price < ledger.discovery_price

        below_average = price < ledger.weighted_average_price
        below_sells = not ledger.sell_prices or price < min(ledger.sell_prices)
        return below_average and below_sells

    def get_buy_recommendation(self, address: str, price: float) -> Optional[dict]:
        ledger = self.get(address)
        if ledger is None:
            return None

        rec = {
            "symbol": ledger.symbol,
            "current_price": price,
            "should_buy": False,
            "reason": "",
            "reference_price": 0.0,
            "price_difference": 0.0,
            "price_difference_pct": 0.0,
        }

        if not ledger.is_traded:
            reference = ledger.discovery_price
            label = "discovery price"
        else:
            reference = ledger.weighted_average_price
            if ledger.sell_prices:
                reference = min(reference, min(ledger.sell_prices))
            label = "reference price"

        if reference <= 0:
            rec["reason"] = "No reference price available"
            return rec

        diff_pct = ((reference - price) / reference) * 100
        rec["reference_price"] = reference
        rec["price_difference"] = reference - price
        rec["price_difference_pct"] = diff_pct
        rec["should_buy"] = price < reference
        direction = "below" if rec["should_buy"] else "above"
        rec["reason"] = (
            f"Current price ({price:.8f}) is {abs(diff_pct):.2f}% {direction} "
            f"{label} ({reference:.8f})"
        )
        return rec

    def get_trading_analysis(self, address: str) -> Optional[dict]:
        ledger = self.get(address)
        if ledger is None:
            return None

        total_profit = ledger.realized_profit + ledger.unrealized_profit
        analysis = ledger.to_dict()
        analysis.pop("trade_history")
        analysis["recent_trades"] = [t.to_dict() for t in ledger.trade_history[-5:]]
        analysis["total_profit"] = total_profit
        analysis["profit_margin_pct"] = (
            (total_profit / ledger.total_buy_value) * 100 if ledger.total_buy_value > 0 else 0.0
        )
        return analysis

    # -------------------------------------------------------------------------
    # SNAPSHOT
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {address: ledger.to_dict() for address, ledger in self._ledgers.items()}

    def load_dict(self, data: dict) -> None:
        for address, payload in data.items():
            self._ledgers[address.lower()] = AssetLedger.from_dict(payload)
        logger.info(f"Restored ledger for {len(data)} assets")
