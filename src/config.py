"""Environment-driven configuration for the Backpack grid bot.

Values are read from the process environment after loading the dotenv file
named by ``ENV_PATH`` (``.env`` by default).  Variables already present in the
environment win over the file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from dotenv import load_dotenv

from errors import InvalidConfig

DEFAULT_MARKET = "SOL_USDC_PERP"
DEFAULT_API_URL = "https://api.backpack.exchange"
DEFAULT_WS_URL = "wss://ws.backpack.exchange"
# Seconds between websocket pings; a missing pong closes the socket.
DEFAULT_WS_HEARTBEAT = 20.0


@dataclass(frozen=True)
class GridConfig:
    """Static grid parameters, fixed for the lifetime of the process."""

    symbol: str
    lower_price: Decimal
    upper_price: Decimal
    num_grids: int
    upper_close: Optional[Decimal] = None
    lower_close: Optional[Decimal] = None
    pnl_threshold: Optional[Decimal] = None
    price_decimals: int = 6

    @property
    def grid_step(self) -> Decimal:
        return (self.upper_price - self.lower_price) / self.num_grids

    def validate(self) -> None:
        if self.num_grids <= 0:
            raise InvalidConfig(f"NUMBER_OF_GRIDS must be positive, got {self.num_grids}")
        if self.lower_price <= 0:
            raise InvalidConfig(f"LOWER_PRICE must be positive, got {self.lower_price}")
        if self.upper_price <= self.lower_price:
            raise InvalidConfig(
                f"UPPER_PRICE ({self.upper_price}) must be above LOWER_PRICE ({self.lower_price})"
            )
        if self.price_decimals < 0:
            raise InvalidConfig(
                f"GRID_PRICE_DECIMALS must not be negative, got {self.price_decimals}"
            )


@dataclass(frozen=True)
class Settings:
    """Everything the bot reads from the environment."""

    grid: GridConfig
    api_key: str = field(repr=False)
    api_secret: str = field(repr=False)
    api_url: str = DEFAULT_API_URL
    ws_url: str = DEFAULT_WS_URL
    reconnect_delay: float = 3.0
    liveness_interval: float = 30.0
    ws_heartbeat: Optional[float] = DEFAULT_WS_HEARTBEAT


def _required(env: Mapping[str, str], name: str) -> str:
    value = (env.get(name) or "").strip()
    if not value:
        raise InvalidConfig(f"Environment variable '{name}' is missing or empty")
    return value


def _decimal(env: Mapping[str, str], name: str, required: bool = False) -> Optional[Decimal]:
    raw = _required(env, name) if required else (env.get(name) or "").strip()
    if not raw:
        return None
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise InvalidConfig(f"Environment variable '{name}' is not a number: {raw!r}") from None
    if not value.is_finite():
        raise InvalidConfig(f"Environment variable '{name}' is not a finite number: {raw!r}")
    return value


def _int(env: Mapping[str, str], name: str, default: Optional[int] = None) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        if default is None:
            raise InvalidConfig(f"Environment variable '{name}' is missing or empty")
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidConfig(f"Environment variable '{name}' is not an integer: {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise InvalidConfig(f"Environment variable '{name}' is not a number: {raw!r}") from None


def _heartbeat(env: Mapping[str, str]) -> Optional[float]:
    """``GRID_WS_HEARTBEAT`` in seconds; ``0`` turns websocket pings off."""
    value = _float(env, "GRID_WS_HEARTBEAT", DEFAULT_WS_HEARTBEAT)
    if value < 0:
        raise InvalidConfig(f"GRID_WS_HEARTBEAT must not be negative, got {value}")
    return value or None


def load_grid_config(env: Optional[Mapping[str, str]] = None) -> GridConfig:
    """Build and validate a :class:`GridConfig` from ``env`` (defaults to ``os.environ``)."""
    env = os.environ if env is None else env
    cfg = GridConfig(
        symbol=(env.get("GRID_MARKET") or DEFAULT_MARKET).strip(),
        lower_price=_decimal(env, "LOWER_PRICE", required=True),
        upper_price=_decimal(env, "UPPER_PRICE", required=True),
        num_grids=_int(env, "NUMBER_OF_GRIDS"),
        upper_close=_decimal(env, "UPPER_FORCE_CLOSE"),
        lower_close=_decimal(env, "LOWER_FORCE_CLOSE"),
        pnl_threshold=_decimal(env, "GRID_PNL"),
        price_decimals=_int(env, "GRID_PRICE_DECIMALS", 6),
    )
    cfg.validate()
    return cfg


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Load the dotenv file (only when reading the real environment) and parse settings."""
    if env is None:
        load_dotenv(os.getenv("ENV_PATH", ".env"), override=False)
        env = os.environ
    return Settings(
        grid=load_grid_config(env),
        api_key=_required(env, "API_KEY"),
        api_secret=_required(env, "API_SECRET"),
        api_url=(env.get("BACKPACK_API_URL") or DEFAULT_API_URL).rstrip("/"),
        ws_url=env.get("BACKPACK_WS_URL") or DEFAULT_WS_URL,
        reconnect_delay=_float(env, "GRID_RECONNECT_DELAY", 3.0),
        liveness_interval=_float(env, "GRID_LIVENESS_INTERVAL", 30.0),
        ws_heartbeat=_heartbeat(env),
    )
