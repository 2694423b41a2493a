import asyncio
import sys
import time
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure src/ is importable
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from rate_limit import TokenBucket, build_rate_limiter  # noqa: E402
from strategy.ladder import Side  # noqa: E402
from grid_fakes import MARKETS, make_gateway  # noqa: E402


@pytest.mark.asyncio
async def test_burst_passes_then_requests_are_spaced():
    bucket = TokenBucket(capacity=3, refill_per_sec=20)

    start = time.monotonic()
    for _ in range(3):
        await bucket.acquire()
    burst = time.monotonic() - start
    await bucket.acquire()
    total = time.monotonic() - start

    assert burst < 0.03
    assert total >= 0.04
    assert bucket.throttled == 1


@pytest.mark.asyncio
async def test_waiters_are_served_in_arrival_order():
    bucket = TokenBucket(capacity=1, refill_per_sec=100)
    await bucket.acquire()
    served = []

    async def take(i):
        await bucket.acquire()
        served.append(i)

    await asyncio.gather(*(take(i) for i in range(4)))

    assert served == [0, 1, 2, 3]


def test_oversized_request_rejected():
    bucket = TokenBucket(capacity=2, refill_per_sec=1)
    with pytest.raises(ValueError):
        asyncio.run(bucket.acquire(3))


@pytest.mark.asyncio
async def test_full_ladder_placement_is_throttled():
    bucket = TokenBucket(capacity=2, refill_per_sec=50)
    gw, session = make_gateway(
        {
            ("GET", "/api/v1/markets"): [(200, MARKETS)],
            ("POST", "/api/v1/order"): [(200, {"status": "New"})],
        },
        limiter=bucket,
    )

    start = time.monotonic()
    for client_id, price in enumerate(["100", "102", "104", "106", "108"]):
        await gw.place_limit_order("SOL_USDC_PERP", Side.BID, Decimal(price), Decimal("1"), client_id)
    elapsed = time.monotonic() - start

    # markets lookup plus five orders: four of the six requests wait for a token
    assert session.count("POST", "/api/v1/order") == 5
    assert session.count("GET", "/api/v1/markets") == 1
    assert bucket.throttled == 4
    assert elapsed >= 0.07


def test_build_rate_limiter_reads_env(monkeypatch):
    monkeypatch.setenv("GRID_RATE_LIMIT_RPS", "4")
    monkeypatch.delenv("GRID_RATE_LIMIT_BURST", raising=False)
    bucket = build_rate_limiter()

    assert bucket.capacity == 8
    assert bucket.refill_per_sec == 4.0

    monkeypatch.setenv("GRID_RATE_LIMIT_BURST", "3")
    assert build_rate_limiter().capacity == 3


def test_build_rate_limiter_ignores_garbage(monkeypatch):
    monkeypatch.setenv("GRID_RATE_LIMIT_RPS", "fast")
    monkeypatch.setenv("GRID_RATE_LIMIT_BURST", "0")
    bucket = build_rate_limiter()

    assert bucket.refill_per_sec == 10.0
    assert bucket.capacity == 1
