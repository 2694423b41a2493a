import json
import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure src/ is importable
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from errors import MalformedMessage  # noqa: E402
from messages import (  # noqa: E402
    CANCEL,
    FILL,
    OTHER,
    MarkPriceUpdate,
    OrderUpdate,
    PositionUpdate,
    Unrecognized,
    decode_frame,
    private_subscribe_frame,
    public_subscribe_frame,
)


def _frame(stream, data):
    return json.dumps({"stream": stream, "data": data})


@pytest.mark.parametrize(
    "event,kind",
    [("orderFill", FILL), ("orderCancel", CANCEL), ("orderAccepted", OTHER)],
)
def test_order_update_kinds(event, kind):
    decoded = decode_frame(
        _frame("account.orderUpdate", {"e": event, "s": "SOL_USDC_PERP", "c": 3})
    )

    assert isinstance(decoded, OrderUpdate)
    assert decoded.kind == kind
    assert decoded.client_id == 3
    assert decoded.triggers_reconcile is (kind != OTHER)


def test_position_update():
    decoded = decode_frame(_frame("account.positionUpdate", {"e": "positionAdjusted", "s": "SOL_USDC_PERP"}))
    assert isinstance(decoded, PositionUpdate)
    assert decoded.symbol == "SOL_USDC_PERP"


def test_mark_price_update():
    decoded = decode_frame(_frame("markPrice.SOL_USDC_PERP", {"e": "markPrice", "p": "151.25"}))
    assert isinstance(decoded, MarkPriceUpdate)
    assert decoded.symbol == "SOL_USDC_PERP"
    assert decoded.mark_price == Decimal("151.25")


@pytest.mark.parametrize(
    "payload",
    [
        {"id": 1, "result": None},
        {"error": {"code": 4006, "message": "Invalid signature"}},
        {"stream": "depth.SOL_USDC", "data": {"e": "depth"}},
        {"stream": "account.orderUpdate", "data": "oops"},
    ],
)
def test_unrecognized_frames(payload):
    assert isinstance(decode_frame(json.dumps(payload)), Unrecognized)


@pytest.mark.parametrize("raw", ["not json", "[1, 2]", "", b"\xff\xfe"])
def test_malformed_frames(raw):
    with pytest.raises(MalformedMessage):
        decode_frame(raw)


class StubSigner:
    def __init__(self):
        self.calls = []

    def sign(self, instruction, params=None, timestamp=None, window=10000):
        self.calls.append((instruction, params))
        return {
            "X-API-Key": "key",
            "X-Signature": "sig",
            "X-Timestamp": "1700000000000",
            "X-Window": "10000",
        }


def test_private_subscribe_frame_is_signed():
    signer = StubSigner()
    frame = private_subscribe_frame(signer)

    assert signer.calls == [("subscribe", {})]
    assert frame == {
        "method": "SUBSCRIBE",
        "params": ["account.positionUpdate", "account.orderUpdate"],
        "signature": ["key", "sig", "1700000000000", "10000"],
    }


def test_public_subscribe_frame_has_no_signature():
    assert public_subscribe_frame("SOL_USDC_PERP") == {
        "method": "SUBSCRIBE",
        "params": ["markPrice.SOL_USDC_PERP"],
    }
