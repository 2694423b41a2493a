import logging
import os
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union, Any

logger = logging.getLogger("backpack_grid")

# Internal guard to avoid re-initialising logging repeatedly
_LOGGING_CONFIGURED = False

def _resolve_level(level: Optional[Union[int, str]]) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        return logging.getLevelName(level.upper()) if isinstance(logging.getLevelName(level.upper()), int) else logging.INFO
    env = os.getenv("LOG_LEVEL") or os.getenv("GRID_LOG_LEVEL")
    if env:
        resolved = logging.getLevelName(env.upper())
        if isinstance(resolved, int):
            return resolved
    return logging.INFO

def setup_logging(log_level: Optional[Union[int, str]] = None) -> None:
    """Initialise console logging in an idempotent way.

    - Configures root logger once with a sane format.
    - Attaches a StreamHandler to the app logger and disables propagation to prevent duplicates.
    - Respects a provided level, otherwise falls back to ``LOG_LEVEL`` or INFO.
    """
    global _LOGGING_CONFIGURED

    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    level = _resolve_level(log_level)

    if not _LOGGING_CONFIGURED:
        # Configure root just once; avoid 'force' to keep 3rd party handlers intact
        logging.basicConfig(level=level, format=fmt)
        _LOGGING_CONFIGURED = True

    logger.setLevel(level)
    logger.propagate = False
    if all(isinstance(h, logging.NullHandler) for h in logger.handlers):
        h = logging.StreamHandler()
        h.setLevel(level)
        h.setFormatter(logging.Formatter(fmt))
        logger.addHandler(h)


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Convert exchange strings/numbers to ``Decimal``; ``default`` on failure."""
    if value is None or value == "":
        return default
    try:
        result = Decimal(str(value))
    except Exception:
        return default
    # NaN/Infinity would raise on ordered comparisons
    return result if result.is_finite() else default


def quantize_step(value: Decimal, step: Optional[Decimal], rounding=ROUND_HALF_UP) -> Decimal:
    """Snap ``value`` to a multiple of ``step`` (tick or lot size)."""
    if not step:
        return value
    return ((value / step).to_integral_value(rounding=rounding) * step).quantize(step)


def format_decimal(value: Decimal) -> str:
    """Plain (non-scientific) string without trailing zeros."""
    text = format(value.normalize(), "f")
    return text if text != "-0" else "0"
