"""Refill ladder levels whose resting order has disappeared.

A fill or a cancel on the account stream means at least one level lost its
order.  The pass does not trust the event payload: it asks the exchange, level
by level, whether an order with the level's clientId is still resting, and
places a new one for every level that has none.  The side of a recreated
order is taken against the mark price at the time of the pass.
"""

from __future__ import annotations

from typing import List

from errors import GatewayError
from messages import OrderUpdate, PositionUpdate, StreamEvent
from strategy.ladder import GridLevel, side_for
from utils import logger


class ReconciliationEngine:
    def __init__(self, controller):
        self.controller = controller

    async def handle_event(self, event: StreamEvent) -> None:
        if isinstance(event, PositionUpdate):
            await self.reconcile("position_update")
        elif isinstance(event, OrderUpdate) and event.triggers_reconcile:
            await self.reconcile(f"order_{event.kind}")

    async def reconcile(self, reason: str = "manual") -> List[GridLevel]:
        """Run one pass under the ladder lock; returns the levels recreated."""
        ctl = self.controller
        symbol = ctl.config.symbol
        recreated: List[GridLevel] = []

        async with ctl.ladder_lock:
            ladder = ctl.ladder
            if ladder is None:
                logger.warning("reconcile skipped; no ladder yet | reason=%s", reason)
                return recreated
            try:
                reference = await ctl.market_data.get_mark_price(symbol)
                snapshot = await ctl.snapshots.get_snapshot()
            except GatewayError as exc:
                logger.error(
                    "reconcile aborted | symbol=%s reason=%s error=%s", symbol, reason, exc
                )
                return recreated

            for level in list(ladder.levels):
                try:
                    existing = await ctl.gateway.find_open_order(symbol, level.client_id)
                except GatewayError as exc:
                    logger.error(
                        "order lookup failed | symbol=%s client_id=%d error=%s",
                        symbol,
                        level.client_id,
                        exc,
                    )
                    continue
                except Exception:
                    logger.exception(
                        "order lookup failed | symbol=%s client_id=%d", symbol, level.client_id
                    )
                    continue
                if existing is not None:
                    continue

                updated = level.with_side(side_for(level.price, reference))
                if await ctl.place_level(updated, snapshot, ladder.generation, action="recreated"):
                    ladder.replace_level(updated)
                    recreated.append(updated)

            logger.info(
                "reconcile done | symbol=%s reason=%s generation=%d reference=%s recreated=%d",
                symbol,
                reason,
                ladder.generation,
                reference,
                len(recreated),
            )
        return recreated
