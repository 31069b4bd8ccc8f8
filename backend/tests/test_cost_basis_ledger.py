"""
Tests for the Cost-Basis Ledger (cost_basis_ledger.py).

Tests cover:
- Asset tracking and validation
- Weighted average on buys, realized profit on sells
- Buy recommendations
- Unknown asset handling
"""
import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import WLD_ADDRESS
from cost_basis_ledger import CostBasisLedger, TradeType
from errors import ConfigValidationError, UnknownAssetError
from events import EventType
from conftest import ASSET, OTHER_ASSET


class TestTracking:
    """Tests for track_asset / untrack_asset."""

    def test_track_normalizes_address(self, ledger):
        """Addresses are stored lowercase."""
        entry = ledger.track_asset(ASSET.upper().replace("0X", "0x"), "TKN", 0.2)
        assert entry.address == ASSET
        assert ledger.is_tracked(ASSET)

    def test_track_is_idempotent(self, ledger):
        """Tracking twice returns the same ledger."""
        first = ledger.track_asset(ASSET, "TKN")
        second = ledger.track_asset(ASSET)
        assert first is second

    def test_rejects_invalid_address(self, ledger):
        """Malformed addresses fail validation."""
        with pytest.raises(ConfigValidationError):
            ledger.track_asset("0x1234", "BAD")

    def test_rejects_base_token(self, ledger):
        """The base token cannot be tracked against itself."""
        with pytest.raises(ConfigValidationError):
            ledger.track_asset(WLD_ADDRESS, "WLD")

    def test_untracked_lookup_returns_none(self, ledger):
        """Lookups on untracked assets return None."""
        assert ledger.get(OTHER_ASSET) is None
        assert ledger.get_trading_analysis(OTHER_ASSET) is None


class TestRecordTrade:
    """Tests for record_trade."""

    def test_unknown_asset_raises(self, ledger):
        """Trades on untracked assets are rejected."""
        with pytest.raises(UnknownAssetError):
            ledger.record_trade(OTHER_ASSET, TradeType.BUY, 1.0, 1.0)

    def test_rejects_non_positive_values(self, ledger):
        """Price and quantity must be positive."""
        ledger.track_asset(ASSET)
        with pytest.raises(ValueError):
            ledger.record_trade(ASSET, TradeType.BUY, 0.0, 1.0)
        with pytest.raises(ValueError):
            ledger.record_trade(ASSET, TradeType.BUY, 1.0, -1.0)

    def test_first_buy_sets_average(self, ledger):
        """A buy into an empty holding sets the average to the fill price."""
        ledger.track_asset(ASSET)
        ledger.record_trade(ASSET, TradeType.BUY, 0.05, 10)

        entry = ledger.get(ASSET)
        assert entry.weighted_average_price == pytest.approx(0.05)
        assert entry.quantity_held == pytest.approx(10)
        assert entry.best_buy_price == pytest.approx(0.05)

    def test_buys_average_by_cost(self, ledger):
        """Later buys produce the cost-weighted average."""
        ledger.track_asset(ASSET)
        ledger.record_trade(ASSET, TradeType.BUY, 0.05, 10)
        ledger.record_trade(ASSET, TradeType.BUY, 0.075, 20)

        entry = ledger.get(ASSET)
        assert entry.total_cost_basis == pytest.approx(2.0)
        assert entry.quantity_held == pytest.approx(30)
        assert entry.weighted_average_price == pytest.approx(2.0 / 30)
        assert entry.best_buy_price == pytest.approx(0.05)
        assert entry.average_buy_price == pytest.approx(0.0625)

    def test_sell_realizes_profit_and_keeps_average(self, ledger):
        """Selling 15 of 30 at 0.08 with average 2/30 realizes about 0.20."""
        ledger.track_asset(ASSET)
        ledger.record_trade(ASSET, TradeType.BUY, 0.05, 10)
        ledger.record_trade(ASSET, TradeType.BUY, 0.075, 20)
        ledger.record_trade(ASSET, TradeType.SELL, 0.08, 15)

        entry = ledger.get(ASSET)
        assert entry.realized_profit == pytest.approx(0.20)
        assert entry.weighted_average_price == pytest.approx(2.0 / 30)
        assert entry.quantity_held == pytest.approx(15)
        assert entry.total_cost_basis == pytest.approx(1.0)
        assert entry.worst_sell_price == pytest.approx(0.08)

    def test_oversell_floors_at_zero(self, ledger):
        """Holdings never go negative."""
        ledger.track_asset(ASSET)
        ledger.record_trade(ASSET, TradeType.BUY, 1.0, 5)
        ledger.record_trade(ASSET, TradeType.SELL, 1.2, 8)
        assert ledger.get(ASSET).quantity_held == 0.0

    def test_buy_after_full_exit_resets_average(self, ledger):
        """An empty holding starts a fresh average."""
        ledger.track_asset(ASSET)
        ledger.record_trade(ASSET, TradeType.BUY, 1.0, 5)
        ledger.record_trade(ASSET, TradeType.SELL, 1.2, 5)
        ledger.record_trade(ASSET, TradeType.BUY, 0.9, 2)
        assert ledger.get(ASSET).weighted_average_price == pytest.approx(0.9)

    def test_publishes_trade_recorded(self, ledger, bus):
        """Every trade emits a TRADE_RECORDED event."""
        ledger.track_asset(ASSET)
        ledger.record_trade(ASSET, "buy", 0.5, 2)
        events = bus.recent(event_type=EventType.TRADE_RECORDED)
        assert len(events) == 1
        assert events[0]["data"]["quantity_held"] == pytest.approx(2)


class TestAnalysis:
    """Tests for buy recommendations and analysis."""

    def test_untraded_asset_uses_discovery_price(self, ledger):
        """Before any trade, only prices below discovery are good buys."""
        ledger.track_asset(ASSET, "TKN", discovery_price=1.0)
        assert ledger.is_good_buy_price(ASSET, 0.9)
        assert not ledger.is_good_buy_price(ASSET, 1.1)

    def test_traded_asset_must_beat_average_and_sells(self, ledger):
        """A good buy is below the average and below every sell price."""
        ledger.track_asset(ASSET)
        ledger.record_trade(ASSET, TradeType.BUY, 1.0, 10)
        ledger.record_trade(ASSET, TradeType.SELL, 0.9, 1)

        assert ledger.is_good_buy_price(ASSET, 0.85)
        assert not ledger.is_good_buy_price(ASSET, 0.95)

        rec = ledger.get_buy_recommendation(ASSET, 0.85)
        assert rec["should_buy"]
        assert rec["reference_price"] == pytest.approx(0.9)

    def test_trading_analysis_includes_unrealized(self, ledger):
        """Marking a price updates unrealized profit in the analysis."""
        ledger.track_asset(ASSET)
        ledger.record_trade(ASSET, TradeType.BUY, 1.0, 10)
        ledger.mark_price(ASSET, 1.5)

        analysis = ledger.get_trading_analysis(ASSET)
        assert analysis["unrealized_profit"] == pytest.approx(5.0)
        assert analysis["total_profit"] == pytest.approx(5.0)
        assert analysis["profit_margin_pct"] == pytest.approx(50.0)
        assert len(analysis["recent_trades"]) == 1

    def test_snapshot_restores_ledger(self, ledger, clock):
        """A restored ledger keeps holdings and history."""
        ledger.track_asset(ASSET, "TKN")
        ledger.record_trade(ASSET, TradeType.BUY, 0.5, 4)

        restored = CostBasisLedger(clock=clock)
        restored.load_dict(ledger.to_dict())
        entry = restored.get(ASSET)
        assert entry.quantity_held == pytest.approx(4)
        assert entry.trade_history[0].type == TradeType.BUY
