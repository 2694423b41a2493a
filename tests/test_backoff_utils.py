import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure src/ is importable
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

import backoff_utils  # noqa: E402
from errors import GatewayError  # noqa: E402
from strategy.ladder import Side  # noqa: E402
from grid_fakes import MARKETS, DummyLimiter, make_gateway  # noqa: E402

MARK_PRICES = [{"symbol": "SOL_USDC_PERP", "markPrice": "150"}]


@pytest.fixture
def fast_backoff(monkeypatch):
    """Shrink the gateway's retry pauses and the per-call timeout."""
    real = backoff_utils.call_with_retries

    async def quick(op, *, limiter, max_attempts=4, base_delay=0.25):
        return await real(op, limiter=limiter, max_attempts=max_attempts, base_delay=0.001)

    monkeypatch.setattr("gateway.call_with_retries", quick)
    monkeypatch.setattr(backoff_utils, "REQUEST_TIMEOUT", 0.05)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,retried",
    [(429, True), (500, True), (503, True), (400, False), (401, False), (404, False)],
)
async def test_gateway_error_status_decides_retry(status, retried):
    attempts = 0

    async def op():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise GatewayError(f"GET /api/v1/markPrices failed ({status})", status_code=status)
        return "ok"

    limiter = DummyLimiter()
    if retried:
        result = await backoff_utils.call_with_retries(op, limiter=limiter, base_delay=0.001)
        assert result == "ok"
        assert attempts == 2
    else:
        with pytest.raises(GatewayError):
            await backoff_utils.call_with_retries(op, limiter=limiter, base_delay=0.001)
        assert attempts == 1
    assert limiter.acquired == attempts


@pytest.mark.asyncio
async def test_retries_stop_after_max_attempts():
    attempts = 0

    async def op():
        nonlocal attempts
        attempts += 1
        raise GatewayError("busy", status_code=503)

    with pytest.raises(GatewayError):
        await backoff_utils.call_with_retries(op, limiter=DummyLimiter(), max_attempts=3, base_delay=0.001)
    assert attempts == 3


@pytest.mark.asyncio
async def test_mark_price_read_survives_transient_5xx(fast_backoff):
    gw, session = make_gateway(
        {("GET", "/api/v1/markPrices"): [(503, "busy"), (429, "slow down"), (200, MARK_PRICES)]}
    )

    assert await gw.get_mark_price("SOL_USDC_PERP") == Decimal("150")
    assert session.count("GET", "/api/v1/markPrices") == 3


@pytest.mark.asyncio
async def test_order_query_gives_up_on_client_error(fast_backoff):
    gw, session = make_gateway({("GET", "/api/v1/order"): [(400, "bad clientId")]})

    with pytest.raises(GatewayError) as excinfo:
        await gw.find_open_order("SOL_USDC_PERP", 1)

    assert excinfo.value.status_code == 400
    assert session.count("GET", "/api/v1/order") == 1


@pytest.mark.asyncio
async def test_stalled_read_times_out_as_gateway_error(fast_backoff):
    gw, session = make_gateway({("GET", "/api/v1/markPrices"): [(200, MARK_PRICES)]}, delay=0.2)

    with pytest.raises(GatewayError, match="timed out"):
        await gw.get_mark_price("SOL_USDC_PERP")
    assert session.count("GET", "/api/v1/markPrices") == 4


@pytest.mark.asyncio
async def test_stalled_placement_is_sent_once(fast_backoff):
    gw, session = make_gateway(
        {
            ("GET", "/api/v1/markets"): [(200, MARKETS)],
            ("POST", "/api/v1/order"): [(200, {"status": "New"})],
        }
    )
    await gw.get_market_filters("SOL_USDC_PERP")
    session.delay = 0.2

    with pytest.raises(GatewayError, match="timed out"):
        await gw.place_limit_order("SOL_USDC_PERP", Side.ASK, Decimal("106"), Decimal("1"), 3)
    assert session.count("POST", "/api/v1/order") == 1

