# grid_main.py
"""Static grid trading bot for Backpack perpetuals.

The bot keeps one resting limit order on each of ``NUMBER_OF_GRIDS`` fixed
price levels between ``LOWER_PRICE`` and ``UPPER_PRICE``.  Two websocket
streams drive it afterwards:

* the private account stream: every fill, cancel or position update runs a
  reconciliation pass that refills the levels whose order is gone;
* the public mark-price stream: every update evaluates the force-close
  bounds, and a breach flattens the position and rebuilds the ladder.

Both paths, as well as the startup build, mutate the ladder only while
holding ``GridController.ladder_lock``.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Optional

from account import TradingAccount
from config import GridConfig, Settings, load_settings
from errors import GatewayError, InvalidConfig
from force_close import ForceCloseGuard
from gateway import AccountSnapshot, BackpackGateway
from messages import private_subscribe_frame, public_subscribe_frame
from reconcile import ReconciliationEngine
from strategy.ladder import GridLevel, Ladder, generate, level_quantity
from stream import StreamConnection, StreamKind
from supervisor import ConnectionSupervisor
from utils import logger, setup_logging

# Pause between attempts when the initial ladder cannot be built.
STARTUP_RETRY_SEC = 5.0


class GridController:
    """Owns the ladder and orchestrates startup, resets and shutdown.

    ``gateway``, ``snapshots`` and ``market_data`` may be the same object (the
    Backpack adapter plays all three roles).
    """

    def __init__(
        self,
        config: GridConfig,
        gateway,
        snapshots,
        market_data,
        private_stream: StreamConnection,
        public_stream: StreamConnection,
        supervisor: ConnectionSupervisor,
        account: Optional[TradingAccount] = None,
    ):
        self.config = config
        self.gateway = gateway
        self.snapshots = snapshots
        self.market_data = market_data
        self.private_stream = private_stream
        self.public_stream = public_stream
        self.supervisor = supervisor
        self.account = account

        self.ladder: Ladder | None = None
        self.ladder_lock = asyncio.Lock()
        self._generation = 0
        self._closing = asyncio.Event()

        self.reconciler = ReconciliationEngine(self)
        self.guard = ForceCloseGuard(self)
        private_stream.on_message(self.reconciler.handle_event)
        public_stream.on_message(self.guard.handle_event)

    # ------------------------------------------------------------------
    @property
    def closing(self) -> asyncio.Event:
        return self._closing

    async def start(self) -> None:
        """Build and place the ladder, then bring up the streams.

        Safe to call again: the ladder is rebuilt under the lock and streams
        or the supervisor that are already running are left alone.
        """
        self.config.validate()
        while not self._closing.is_set():
            try:
                async with self.ladder_lock:
                    await self.rebuild()
                break
            except GatewayError as exc:
                logger.error(
                    "initial ladder build failed; retrying in %.1fs | symbol=%s error=%s",
                    STARTUP_RETRY_SEC,
                    self.config.symbol,
                    exc,
                )
                await asyncio.sleep(STARTUP_RETRY_SEC)

        if self._closing.is_set():
            logger.info("[grid] stop requested before startup finished | symbol=%s", self.config.symbol)
            return
        self.private_stream.connect()
        self.public_stream.connect()
        self.supervisor.start()
        logger.info(
            "[grid] started | symbol=%s generation=%d", self.config.symbol, self._generation
        )

    async def reset(self) -> Ladder:
        async with self.ladder_lock:
            return await self.rebuild()

    async def rebuild(self) -> Ladder:
        """Replace the ladder with a new generation; caller holds ``ladder_lock``.

        Raises :class:`GatewayError` when the reference price is unavailable, in
        which case the current ladder is kept untouched.
        """
        if not self.ladder_lock.locked():
            raise RuntimeError("rebuild requires the ladder lock")
        symbol = self.config.symbol
        reference = await self.market_data.get_mark_price(symbol)

        self._generation += 1
        ladder = generate(self.config, reference, generation=self._generation)
        self.ladder = ladder
        logger.info(
            "ladder built | symbol=%s generation=%d reference=%s levels=%d step=%s",
            symbol,
            ladder.generation,
            reference,
            len(ladder),
            self.config.grid_step,
        )

        try:
            await self.gateway.cancel_all_open_orders(symbol)
            logger.info("cancelled existing orders | symbol=%s", symbol)
        except GatewayError as exc:
            logger.error("cancel existing orders failed | symbol=%s error=%s", symbol, exc)

        try:
            snapshot = await self.snapshots.get_snapshot()
        except GatewayError as exc:
            logger.error(
                "account snapshot failed; levels left for reconcile | symbol=%s error=%s",
                symbol,
                exc,
            )
            return ladder

        placed = 0
        for level in ladder.levels:
            if await self.place_level(level, snapshot, ladder.generation):
                placed += 1
        logger.info(
            "ladder placed | symbol=%s generation=%d placed=%d/%d",
            symbol,
            ladder.generation,
            placed,
            len(ladder),
        )
        return ladder

    async def place_level(
        self,
        level: GridLevel,
        snapshot: AccountSnapshot,
        generation: int,
        action: str = "placed",
    ) -> bool:
        """Submit the resting order for ``level``; failures are logged, not raised."""
        symbol = self.config.symbol
        quantity = level_quantity(snapshot.capital_available, self.config.num_grids, level.price)
        try:
            await self.gateway.place_limit_order(
                symbol, level.side, level.price, quantity, level.client_id
            )
        except GatewayError as exc:
            logger.error(
                "order %s failed | symbol=%s side=%s price=%s client_id=%d generation=%d error=%s",
                action,
                symbol,
                level.side.value,
                level.price,
                level.client_id,
                generation,
                exc,
            )
            return False
        except Exception:
            logger.exception(
                "order %s failed | symbol=%s side=%s price=%s client_id=%d generation=%d",
                action,
                symbol,
                level.side.value,
                level.price,
                level.client_id,
                generation,
            )
            return False
        logger.info(
            "order %s | symbol=%s side=%s price=%s qty=%s client_id=%d generation=%d",
            action,
            symbol,
            level.side.value,
            level.price,
            quantity,
            level.client_id,
            generation,
        )
        return True

    def request_stop(self) -> None:
        self._closing.set()

    async def stop(self) -> None:
        self._closing.set()
        await self.supervisor.stop()
        await self.private_stream.close()
        await self.public_stream.close()
        try:
            await self.gateway.cancel_all_open_orders(self.config.symbol)
        except GatewayError as exc:
            logger.error("cancel on stop failed | symbol=%s error=%s", self.config.symbol, exc)
        if self.account is not None:
            await self.account.close()


# ----------------------------------------------------------------------
def build_controller(settings: Settings) -> GridController:
    """Wire the Backpack adapter, both streams and the supervisor together."""
    account = TradingAccount(settings)
    gateway = BackpackGateway(account)
    symbol = settings.grid.symbol

    private_stream = StreamConnection(
        StreamKind.PRIVATE,
        settings.ws_url,
        account.get_session,
        lambda: private_subscribe_frame(account.get_signer()),
        reconnect_delay=settings.reconnect_delay,
        heartbeat=settings.ws_heartbeat,
    )
    public_stream = StreamConnection(
        StreamKind.PUBLIC,
        settings.ws_url,
        account.get_session,
        lambda: public_subscribe_frame(symbol),
        reconnect_delay=settings.reconnect_delay,
        heartbeat=settings.ws_heartbeat,
    )
    supervisor = ConnectionSupervisor(
        [private_stream, public_stream], interval=settings.liveness_interval
    )
    return GridController(
        settings.grid,
        gateway,
        gateway,
        gateway,
        private_stream,
        public_stream,
        supervisor,
        account=account,
    )


async def main():
    # Ensure logging is configured so warnings/errors are visible
    setup_logging()
    try:
        settings = load_settings()
        controller = build_controller(settings)
    except InvalidConfig as exc:
        logger.error("invalid configuration | %s", exc)
        raise SystemExit(2)

    grid = settings.grid
    logger.info(
        "[grid] config | symbol=%s lower=%s upper=%s grids=%d step=%s upper_close=%s lower_close=%s pnl=%s",
        grid.symbol,
        grid.lower_price,
        grid.upper_price,
        grid.num_grids,
        grid.grid_step,
        grid.upper_close,
        grid.lower_close,
        grid.pnl_threshold,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, controller.request_stop)
        except NotImplementedError:
            # Fallback for platforms without loop signal handlers (e.g. Windows)
            signal.signal(sig, lambda s, f, lp=loop: lp.call_soon_threadsafe(controller.request_stop))

    try:
        await controller.start()
        await controller.closing.wait()
    finally:
        await controller.stop()
        logger.info("[grid] stopped.")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
