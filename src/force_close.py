"""Flatten the position and rebuild the ladder when risk bounds are hit."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from errors import GatewayError
from gateway import Position
from messages import MarkPriceUpdate, StreamEvent
from utils import logger


class ForceCloseGuard:
    """Evaluate close conditions on every mark-price update for the grid symbol.

    The position closes when the mark price reaches ``upper_close`` or
    ``lower_close`` or when realized plus unrealized PnL, net of the estimated
    round-trip fee, reaches ``pnl_threshold``.  All three comparisons are
    inclusive and an unset bound never fires.  A position reported without a
    usable mark price is only checked against the PnL threshold.  Closing and
    the following ladder rebuild happen under the ladder lock as one step.
    """

    def __init__(self, controller):
        self.controller = controller

    async def handle_event(self, event: StreamEvent) -> None:
        if isinstance(event, MarkPriceUpdate) and event.symbol == self.controller.config.symbol:
            await self.check()

    def should_close(self, mark_price: Optional[Decimal], pnl: Decimal) -> bool:
        cfg = self.controller.config
        if mark_price is not None:
            if cfg.upper_close is not None and mark_price >= cfg.upper_close:
                return True
            if cfg.lower_close is not None and mark_price <= cfg.lower_close:
                return True
        return cfg.pnl_threshold is not None and pnl >= cfg.pnl_threshold

    @staticmethod
    def net_pnl(position: Position, maker_fee: Decimal, taker_fee: Decimal) -> Decimal:
        total_fee = abs(position.net_exposure_notional) * (maker_fee + taker_fee)
        return position.pnl_realized + position.pnl_unrealized - total_fee

    async def check(self) -> bool:
        """Returns ``True`` when the position was closed and the ladder reset."""
        ctl = self.controller
        symbol = ctl.config.symbol
        try:
            positions = await ctl.gateway.get_open_positions()
        except GatewayError as exc:
            logger.error("position fetch failed | symbol=%s error=%s", symbol, exc)
            return False

        position: Optional[Position] = next(
            (p for p in positions if p.symbol == symbol and p.net_quantity != 0), None
        )
        if position is None:
            return False

        try:
            snapshot = await ctl.snapshots.get_snapshot()
        except GatewayError as exc:
            logger.error("account snapshot failed | symbol=%s error=%s", symbol, exc)
            return False

        pnl = self.net_pnl(position, snapshot.maker_fee, snapshot.taker_fee)
        if not self.should_close(position.mark_price, pnl):
            return False

        logger.warning(
            "force close triggered | symbol=%s mark=%s pnl=%s upper_close=%s lower_close=%s pnl_threshold=%s",
            symbol,
            position.mark_price,
            pnl,
            ctl.config.upper_close,
            ctl.config.lower_close,
            ctl.config.pnl_threshold,
        )
        async with ctl.ladder_lock:
            try:
                await ctl.gateway.close_position(position)
            except GatewayError as exc:
                logger.error("force close failed | symbol=%s error=%s", symbol, exc)
                return False
            logger.info(
                "position closed | symbol=%s quantity=%s mark=%s",
                symbol,
                position.net_quantity,
                position.mark_price,
            )
            try:
                ladder = await ctl.rebuild()
                logger.info(
                    "reset done | symbol=%s generation=%d", symbol, ladder.generation
                )
            except GatewayError as exc:
                logger.error(
                    "ladder reset failed; keeping generation %d | symbol=%s error=%s",
                    ctl.ladder.generation if ctl.ladder else 0,
                    symbol,
                    exc,
                )
        return True
