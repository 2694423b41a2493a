"""Stream frame decoding and subscription frames.

Inbound frames are JSON objects ``{"stream": <channel>, "data": {...}}``.
They are decoded into a closed set of events so that handlers never inspect
raw JSON:

* :class:`PositionUpdate` - ``account.positionUpdate``
* :class:`OrderUpdate` - ``account.orderUpdate``; ``kind`` is ``fill``,
  ``cancel`` or ``other`` from the ``e`` discriminator
* :class:`MarkPriceUpdate` - ``markPrice.<symbol>``
* :class:`Unrecognized` - anything else (subscription acks, errors, other
  channels)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from errors import MalformedMessage
from utils import to_decimal

POSITION_CHANNEL = "account.positionUpdate"
ORDER_CHANNEL = "account.orderUpdate"
PRIVATE_CHANNELS = [POSITION_CHANNEL, ORDER_CHANNEL]
MARK_PRICE_PREFIX = "markPrice."

FILL = "fill"
CANCEL = "cancel"
OTHER = "other"
_ORDER_EVENT_KINDS = {"orderFill": FILL, "orderCancel": CANCEL}


@dataclass(frozen=True)
class PositionUpdate:
    symbol: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OrderUpdate:
    kind: str
    event: Optional[str]
    symbol: Optional[str]
    client_id: Optional[int]
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def triggers_reconcile(self) -> bool:
        return self.kind in (FILL, CANCEL)


@dataclass(frozen=True)
class MarkPriceUpdate:
    symbol: str
    mark_price: Optional[Decimal]
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Unrecognized:
    stream: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def error(self) -> Optional[Any]:
        return self.payload.get("error")


StreamEvent = Union[PositionUpdate, OrderUpdate, MarkPriceUpdate, Unrecognized]


def _client_id(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def decode_frame(raw: Union[str, bytes]) -> StreamEvent:
    """Parse one text frame; raises :class:`MalformedMessage` on bad JSON."""
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedMessage(f"invalid JSON frame: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedMessage(f"expected a JSON object, got {type(parsed).__name__}")

    stream = parsed.get("stream")
    data = parsed.get("data")
    if not isinstance(stream, str) or not isinstance(data, dict):
        return Unrecognized(stream=stream if isinstance(stream, str) else None, payload=parsed)

    if stream == POSITION_CHANNEL or stream.startswith(POSITION_CHANNEL + "."):
        return PositionUpdate(symbol=data.get("s"), data=data)
    if stream == ORDER_CHANNEL or stream.startswith(ORDER_CHANNEL + "."):
        event = data.get("e")
        return OrderUpdate(
            kind=_ORDER_EVENT_KINDS.get(event, OTHER),
            event=event,
            symbol=data.get("s"),
            client_id=_client_id(data.get("c")),
            data=data,
        )
    if stream.startswith(MARK_PRICE_PREFIX):
        return MarkPriceUpdate(
            symbol=stream[len(MARK_PRICE_PREFIX):],
            mark_price=to_decimal(data.get("p")),
            data=data,
        )
    return Unrecognized(stream=stream, payload=parsed)


def mark_price_channel(symbol: str) -> str:
    return f"{MARK_PRICE_PREFIX}{symbol}"


def private_subscribe_frame(signer, channels: Optional[List[str]] = None) -> Dict[str, Any]:
    """Authenticated subscribe frame for the account channels."""
    headers = signer.sign("subscribe", {})
    return {
        "method": "SUBSCRIBE",
        "params": list(channels or PRIVATE_CHANNELS),
        "signature": [
            headers["X-API-Key"],
            headers["X-Signature"],
            headers["X-Timestamp"],
            headers["X-Window"],
        ],
    }


def public_subscribe_frame(symbol: str) -> Dict[str, Any]:
    return {"method": "SUBSCRIBE", "params": [mark_price_channel(symbol)]}
