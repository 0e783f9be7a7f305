"""Tests for domain models."""

from __future__ import annotations

from datetime import datetime

import pytest
from pydantic import ValidationError

from autotrade.models import OrderRequest, Position, QueuedTrade, RawSignal, TradeNotification

VALID = {
    "id": "sig-1",
    "instrument": "BTC",
    "direction": "LONG",
    "confidence": 80,
    "entry_price": 100.0,
    "source_id": "live-scanner",
}


class TestRawSignal:
    def test_valid(self):
        signal = RawSignal.model_validate(VALID)
        assert signal.direction == "LONG"
        assert signal.timeframe == "1h"
        assert signal.observed_at.tzinfo is not None

    @pytest.mark.parametrize("raw, expected", [("BUY", "LONG"), ("sell", "SHORT"), ("short", "SHORT")])
    def test_direction_normalised(self, raw, expected):
        assert RawSignal.model_validate({**VALID, "direction": raw}).direction == expected

    @pytest.mark.parametrize("field, value", [
        ("confidence", 101),
        ("confidence", -1),
        ("entry_price", 0),
        ("instrument", ""),
        ("direction", "FLAT"),
        ("stop_loss", -5),
    ])
    def test_invalid_fields_rejected(self, field, value):
        with pytest.raises(ValidationError):
            RawSignal.model_validate({**VALID, field: value})

    def test_missing_source_rejected(self):
        data = dict(VALID)
        del data["source_id"]
        with pytest.raises(ValidationError):
            RawSignal.model_validate(data)

    def test_naive_timestamp_made_utc(self):
        signal = RawSignal.model_validate({**VALID, "observed_at": datetime(2025, 1, 1, 12, 0)})
        assert signal.observed_at.utcoffset().total_seconds() == 0

    def test_frozen(self):
        signal = RawSignal.model_validate(VALID)
        with pytest.raises(ValidationError):
            signal.confidence = 10


class TestPosition:
    def test_notional(self):
        pos = Position(instrument="ETH", side="SHORT", size=2.0, entry_price=3000, current_price=2900)
        assert pos.notional == 5800.0


class TestOrderRequest:
    def test_amount_must_be_positive(self):
        with pytest.raises(ValidationError):
            OrderRequest(instrument="BTC", side="LONG", amount_usd=0)

    def test_fresh_idempotency_keys(self):
        a = OrderRequest(instrument="BTC", side="LONG", amount_usd=10)
        b = OrderRequest(instrument="BTC", side="LONG", amount_usd=10)
        assert a.idempotency_key != b.idempotency_key
        assert a.order_type == "MARKET"


class TestQueuedTrade:
    def test_defaults(self):
        trade = QueuedTrade(instrument="BTC", side="LONG", amount_usd=100, idempotency_key="k")
        assert trade.id.startswith("trade_")
        assert trade.status == "pending"
        assert trade.retries == 0


class TestTradeNotification:
    def test_json_dump(self):
        note = TradeNotification(event="emergency_stop", message="halted")
        data = note.model_dump(mode="json")
        assert data["event"] == "emergency_stop"
        assert isinstance(data["ts"], str)
