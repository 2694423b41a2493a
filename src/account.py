import base64
import time
from typing import Any, Dict, Mapping, Optional

import aiohttp
from cryptography.hazmat.primitives.asymmetric import ed25519

from config import Settings
from errors import InvalidConfig

# Validity window, in milliseconds, attached to every signed instruction.
DEFAULT_WINDOW_MS = 10_000


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def signing_payload(
    instruction: str, params: Optional[Mapping[str, Any]], timestamp: int, window: int
) -> str:
    """Canonical string signed for an instruction.

    Parameters are sorted by key and appended after the instruction, followed
    by the timestamp and window: ``instruction=x&a=1&b=2&timestamp=t&window=w``.
    """
    parts = [f"instruction={instruction}"]
    for key in sorted(params or {}):
        value = params[key]
        if value is None:
            continue
        parts.append(f"{key}={_encode_value(value)}")
    parts.append(f"timestamp={timestamp}")
    parts.append(f"window={window}")
    return "&".join(parts)


class RequestSigner:
    """ED25519 signer for Backpack REST instructions and stream subscriptions."""

    def __init__(self, api_key: str, api_secret: str):
        self.api_key = api_key
        try:
            seed = base64.b64decode(api_secret)
            self._private_key = ed25519.Ed25519PrivateKey.from_private_bytes(seed)
        except Exception as exc:
            raise InvalidConfig(f"Invalid Backpack API secret: {exc}") from exc

    def sign(
        self,
        instruction: str,
        params: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[int] = None,
        window: int = DEFAULT_WINDOW_MS,
    ) -> Dict[str, str]:
        """Return the four authentication headers for ``instruction``."""
        ts = int(time.time() * 1000) if timestamp is None else timestamp
        message = signing_payload(instruction, params, ts, window)
        signature = base64.b64encode(self._private_key.sign(message.encode())).decode()
        return {
            "X-API-Key": self.api_key,
            "X-Signature": signature,
            "X-Timestamp": str(ts),
            "X-Window": str(window),
        }


class TradingAccount:
    """Credentials plus the shared HTTP session used for REST and websockets."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.signer = RequestSigner(settings.api_key, settings.api_secret)
        self._session: Optional[aiohttp.ClientSession] = None

    def get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    def get_signer(self) -> RequestSigner:
        return self.signer

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
