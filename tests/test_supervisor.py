import asyncio
import sys
from pathlib import Path

import pytest

# Ensure src/ is importable
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from stream import ConnectionStatus, StreamKind  # noqa: E402
from supervisor import ConnectionSupervisor  # noqa: E402
from grid_fakes import FakeStream  # noqa: E402


def test_tick_leaves_open_streams_alone():
    private = FakeStream(StreamKind.PRIVATE, open_=True)
    public = FakeStream(StreamKind.PUBLIC, open_=True)
    sup = ConnectionSupervisor([private, public])

    assert sup.tick() == 0
    assert private.connect_calls == 0
    assert public.connect_calls == 0


def test_tick_reconnects_disconnected_stream():
    private = FakeStream(StreamKind.PRIVATE, open_=True)
    public = FakeStream(StreamKind.PUBLIC)
    sup = ConnectionSupervisor([private, public])

    assert sup.tick() == 1
    assert public.state.status is ConnectionStatus.CONNECTING
    # the attempt in flight is not duplicated
    assert sup.tick() == 0
    assert public.connect_calls == 2


@pytest.mark.asyncio
async def test_loop_runs_on_interval_and_stops():
    stream = FakeStream(StreamKind.PUBLIC)
    sup = ConnectionSupervisor([stream], interval=0.01)

    sup.start()
    sup.start()
    await asyncio.sleep(0.05)
    await sup.stop()

    calls = stream.connect_calls
    assert calls >= 1
    await asyncio.sleep(0.03)
    assert stream.connect_calls == calls
