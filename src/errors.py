"""Exception types shared by the grid engine.

Only :class:`InvalidConfig` is fatal.  Everything else is raised by a single
exchange call or a single stream frame and is caught, logged and retried on the
next triggering event or timer tick.
"""

from __future__ import annotations

from typing import Optional


class GridError(Exception):
    """Base class for all grid engine errors."""


class InvalidConfig(GridError):
    """Grid bounds, level count or credentials are unusable."""


class GatewayError(GridError):
    """An exchange REST call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransportError(GridError):
    """A streaming connection dropped, errored or is not open."""


class MalformedMessage(GridError):
    """An inbound stream frame could not be parsed."""
