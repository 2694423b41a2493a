# gateway.py
"""Backpack REST adapter used by the grid engine.

One object plays the three collaborator roles the engine needs: the order
gateway (cancel / place / query / close), the account snapshot provider
(capital and fees) and the mark price provider.  Every call is throttled by
the shared token bucket, bounded by ``GRID_REQUEST_TIMEOUT`` and reported as
:class:`GatewayError` on failure.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import aiohttp

from account import TradingAccount
from backoff_utils import call_with_retries
from errors import GatewayError
from rate_limit import build_rate_limiter
from strategy.ladder import Side
from utils import format_decimal, logger, quantize_step, to_decimal

_CLOSED_STATUSES = {"Filled", "Cancelled", "Expired"}
# Backpack reports account fees in basis points.
_BPS = Decimal("10000")


@dataclass(frozen=True)
class Position:
    symbol: str
    mark_price: Optional[Decimal]
    net_quantity: Decimal
    net_exposure_notional: Decimal
    pnl_realized: Decimal
    pnl_unrealized: Decimal

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "Position":
        zero = Decimal(0)
        return cls(
            symbol=str(raw.get("symbol", "")),
            mark_price=to_decimal(raw.get("markPrice")),
            net_quantity=to_decimal(raw.get("netQuantity"), zero),
            net_exposure_notional=to_decimal(raw.get("netExposureNotional"), zero),
            pnl_realized=to_decimal(raw.get("pnlRealized"), zero),
            pnl_unrealized=to_decimal(raw.get("pnlUnrealized"), zero),
        )


@dataclass(frozen=True)
class OpenOrder:
    id: str
    client_id: Optional[int]
    side: Optional[str]
    price: Optional[Decimal]
    status: Optional[str]


@dataclass(frozen=True)
class AccountSnapshot:
    capital_available: Decimal
    leverage: Decimal
    maker_fee: Decimal
    taker_fee: Decimal


@dataclass(frozen=True)
class MarketFilters:
    tick_size: Optional[Decimal]
    step_size: Optional[Decimal]
    min_quantity: Optional[Decimal]


class BackpackGateway:
    def __init__(self, account: TradingAccount, limiter=None):
        self.account = account
        self._base_url = account.settings.api_url
        self._signer = account.get_signer()
        self._limiter = limiter or build_rate_limiter()
        self._filters: Dict[str, MarketFilters] = {}

    # ------------------------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        *,
        instruction: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
    ) -> Any:
        headers = {"Content-Type": "application/json; charset=utf-8"}
        if instruction:
            headers.update(self._signer.sign(instruction, body if body is not None else params))
        query = {k: str(v) for k, v in (params or {}).items() if v is not None} or None

        session = self.account.get_session()
        async with session.request(
            method, f"{self._base_url}{path}", params=query, json=body, headers=headers
        ) as resp:
            text = await resp.text()
            if allow_404 and resp.status == 404:
                return None
            if resp.status >= 400:
                raise GatewayError(
                    f"{method} {path} failed ({resp.status}): {text or '<empty body>'}",
                    status_code=resp.status,
                )
            if not text:
                return None
            try:
                return json.loads(text)
            except ValueError:
                return text

    async def _call(self, what: str, op, *, max_attempts: int = 4) -> Any:
        try:
            return await call_with_retries(op, limiter=self._limiter, max_attempts=max_attempts)
        except GatewayError:
            raise
        except asyncio.TimeoutError as exc:
            raise GatewayError(f"{what} timed out") from exc
        except aiohttp.ClientError as exc:
            raise GatewayError(f"{what} failed: {exc}") from exc

    # ------------------------------------------------------------------
    async def get_market_filters(self, symbol: str) -> MarketFilters:
        cached = self._filters.get(symbol)
        if cached is not None:
            return cached
        markets = await self._call("markets", lambda: self._request("GET", "/api/v1/markets"))
        for market in markets or []:
            filters = market.get("filters") or {}
            self._filters[market.get("symbol")] = MarketFilters(
                tick_size=to_decimal((filters.get("price") or {}).get("tickSize")),
                step_size=to_decimal((filters.get("quantity") or {}).get("stepSize")),
                min_quantity=to_decimal((filters.get("quantity") or {}).get("minQuantity")),
            )
        if symbol not in self._filters:
            raise GatewayError(f"Unknown market {symbol}")
        return self._filters[symbol]

    async def get_mark_price(self, symbol: str) -> Decimal:
        data = await self._call(
            "mark price",
            lambda: self._request("GET", "/api/v1/markPrices", params={"symbol": symbol}),
        )
        entries = data if isinstance(data, list) else [data]
        for entry in entries:
            if isinstance(entry, dict) and entry.get("symbol", symbol) == symbol:
                price = to_decimal(entry.get("markPrice"))
                if price is not None and price > 0:
                    return price
        raise GatewayError(f"No mark price returned for {symbol}")

    async def get_snapshot(self) -> AccountSnapshot:
        collateral = await self._call(
            "collateral",
            lambda: self._request(
                "GET", "/api/v1/capital/collateral", instruction="collateralQuery"
            ),
        )
        account = await self._call(
            "account",
            lambda: self._request("GET", "/api/v1/account", instruction="accountQuery"),
        )
        equity = to_decimal((collateral or {}).get("netEquityAvailable"), Decimal(0))
        leverage = to_decimal((account or {}).get("leverageLimit"), Decimal(1))
        return AccountSnapshot(
            capital_available=equity * leverage,
            leverage=leverage,
            maker_fee=to_decimal((account or {}).get("futuresMakerFee"), Decimal(0)) / _BPS,
            taker_fee=to_decimal((account or {}).get("futuresTakerFee"), Decimal(0)) / _BPS,
        )

    # ------------------------------------------------------------------
    async def cancel_all_open_orders(self, symbol: str) -> None:
        await self._call(
            "cancel all",
            lambda: self._request(
                "DELETE", "/api/v1/orders", instruction="orderCancelAll", body={"symbol": symbol}
            ),
        )

    async def place_limit_order(
        self, symbol: str, side: Side, price: Decimal, quantity: Decimal, client_id: int
    ) -> Any:
        filters = await self.get_market_filters(symbol)
        px = quantize_step(price, filters.tick_size, ROUND_HALF_UP)
        qty = quantize_step(quantity, filters.step_size, ROUND_DOWN)
        if qty <= 0 or (filters.min_quantity is not None and qty < filters.min_quantity):
            raise GatewayError(
                f"quantity {qty} below minimum {filters.min_quantity} for {symbol}"
            )
        body = {
            "symbol": symbol,
            "side": Side(side).value,
            "orderType": "Limit",
            "price": format_decimal(px),
            "quantity": format_decimal(qty),
            "clientId": client_id,
            "postOnly": True,
            "timeInForce": "GTC",
        }
        logger.debug("order payload | %s", body)
        # A single attempt: a timed-out placement may have landed, and the next
        # reconcile pass checks the clientId before placing again.
        return await self._call(
            "place order",
            lambda: self._request("POST", "/api/v1/order", instruction="orderExecute", body=body),
            max_attempts=1,
        )

    async def find_open_order(self, symbol: str, client_id: int) -> Optional[OpenOrder]:
        raw = await self._call(
            "order query",
            lambda: self._request(
                "GET",
                "/api/v1/order",
                instruction="orderQuery",
                params={"clientId": client_id, "symbol": symbol},
                allow_404=True,
            ),
        )
        if not isinstance(raw, dict):
            return None
        status = raw.get("status")
        if status in _CLOSED_STATUSES:
            return None
        raw_client_id = raw.get("clientId")
        return OpenOrder(
            id=str(raw.get("id", "")),
            client_id=int(raw_client_id) if raw_client_id is not None else None,
            side=raw.get("side"),
            price=to_decimal(raw.get("price")),
            status=status,
        )

    async def get_open_positions(self) -> List[Position]:
        data = await self._call(
            "positions",
            lambda: self._request("GET", "/api/v1/position", instruction="positionQuery"),
        )
        return [Position.from_raw(item) for item in (data or []) if isinstance(item, dict)]

    async def close_position(self, position: Position) -> Any:
        if position.net_quantity == 0:
            logger.info("close position skipped | symbol=%s net_quantity=0", position.symbol)
            return None
        side = Side.ASK if position.net_quantity > 0 else Side.BID
        body = {
            "symbol": position.symbol,
            "side": side.value,
            "orderType": "Market",
            "quantity": format_decimal(abs(position.net_quantity)),
            "reduceOnly": True,
        }
        return await self._call(
            "close position",
            lambda: self._request("POST", "/api/v1/order", instruction="orderExecute", body=body),
            max_attempts=1,
        )
