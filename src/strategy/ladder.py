"""Static price ladder for the grid.

The ladder is a pure function of the grid bounds, the level count and the
reference price at build time: ``numGrids`` levels starting at ``lower_price``
and spaced by ``grid_step``.  Levels below the reference price rest as bids,
the others as asks.  The level index doubles as the exchange ``clientId`` so
the engine can ask the exchange whether a given level still has its order.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import List

from config import GridConfig
from errors import InvalidConfig


class Side(str, Enum):
    BID = "Bid"
    ASK = "Ask"


def side_for(price: Decimal, reference_price: Decimal) -> Side:
    """Bid below the reference price, ask at or above it."""
    return Side.BID if price < reference_price else Side.ASK


@dataclass(frozen=True)
class GridLevel:
    index: int
    price: Decimal
    side: Side

    @property
    def client_id(self) -> int:
        return self.index

    def with_side(self, side: Side) -> "GridLevel":
        return self if side == self.side else replace(self, side=side)


@dataclass
class Ladder:
    """One generation of grid levels."""

    generation: int
    levels: List[GridLevel] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.levels)

    def level(self, client_id: int) -> GridLevel:
        return self.levels[client_id]

    def replace_level(self, level: GridLevel) -> None:
        if self.levels[level.index].index != level.index:
            raise ValueError(f"level {level.index} does not belong to this ladder")
        self.levels[level.index] = level


def level_quantity(capital_available: Decimal, num_grids: int, price: Decimal) -> Decimal:
    """Capital is split evenly across levels and converted to base units."""
    return capital_available / num_grids / price


def generate(config: GridConfig, reference_price: Decimal, generation: int = 0) -> Ladder:
    """Build the ladder for ``config`` around ``reference_price``.

    Raises :class:`InvalidConfig` when the level count is not positive or the
    bounds are inverted, or when ``price_decimals`` is negative.
    """
    if config.num_grids <= 0:
        raise InvalidConfig(f"num_grids must be positive, got {config.num_grids}")
    if config.upper_price <= config.lower_price:
        raise InvalidConfig(
            f"upper_price ({config.upper_price}) must be above lower_price ({config.lower_price})"
        )
    if config.price_decimals < 0:
        raise InvalidConfig(f"price_decimals must not be negative, got {config.price_decimals}")

    quantum = Decimal(1).scaleb(-config.price_decimals)
    step = config.grid_step
    levels = []
    for i in range(config.num_grids):
        price = (config.lower_price + i * step).quantize(quantum, rounding=ROUND_HALF_UP)
        levels.append(GridLevel(index=i, price=price, side=side_for(price, reference_price)))
    return Ladder(generation=generation, levels=levels)
