import asyncio

import pytest

from ask_core.domain.models import FrameKind, ProtocolFrame
from ask_core.domain.patches import ContentDelta, TerminalSuccess
from ask_core.streaming.aggregator import DeltaAggregator


def delta(text):
    return ProtocolFrame(FrameKind.DELTA, text)


@pytest.mark.asyncio
async def test_frames_are_batched_per_tick_in_order():
    batches = []
    agg = DeltaAggregator("m1", batches.append, interval=0.02)
    for t in ["a", "b", "c"]:
        agg.push(delta(t))
    assert batches == []
    await asyncio.sleep(0.06)
    assert batches == [[ContentDelta("m1", "a"), ContentDelta("m1", "b"), ContentDelta("m1", "c")]]
    agg.cancel()


@pytest.mark.asyncio
async def test_batches_are_fifo_across_ticks():
    batches = []
    agg = DeltaAggregator("m1", batches.append, interval=0.02)
    agg.push(delta("a"))
    await asyncio.sleep(0.05)
    agg.push(delta("b"))
    await asyncio.sleep(0.05)
    assert batches == [[ContentDelta("m1", "a")], [ContentDelta("m1", "b")]]
    agg.cancel()


@pytest.mark.asyncio
async def test_terminal_frame_forces_immediate_final_flush():
    batches = []
    agg = DeltaAggregator("m1", batches.append, interval=10)
    agg.push(delta("Hel"))
    agg.push(ProtocolFrame(FrameKind.FINISH, "lo", "stop"), response_time_ms=42)
    assert batches == [[ContentDelta("m1", "Hel"), TerminalSuccess("m1", "lo", 42)]]
    assert agg.stopped
    agg.push(delta("late"))
    await asyncio.sleep(0)
    assert agg.pending == 0
    assert len(batches) == 1


@pytest.mark.asyncio
async def test_cancel_discards_buffered_frames():
    batches = []
    agg = DeltaAggregator("m1", batches.append, interval=0.01)
    agg.push(delta("a"))
    agg.push(delta("b"))
    agg.cancel()
    await asyncio.sleep(0.05)
    assert batches == []
    assert agg.pending == 0


@pytest.mark.asyncio
async def test_close_flushes_remaining_frames_once():
    batches = []
    agg = DeltaAggregator("m1", batches.append, interval=10)
    agg.push(delta("a"))
    agg.close()
    agg.close()
    agg.cancel()
    assert batches == [[ContentDelta("m1", "a")]]


def test_flush_of_empty_batch_is_noop():
    batches = []
    agg = DeltaAggregator("m1", batches.append)
    agg.flush()
    agg.close()
    assert batches == []


@pytest.mark.asyncio
async def test_sink_failure_is_reported_and_stops_ticker():
    errors = []

    def broken_sink(batch):
        raise RuntimeError("render failed")

    agg = DeltaAggregator("m1", broken_sink, interval=0.01, on_error=errors.append)
    agg.push(delta("a"))
    await asyncio.sleep(0.05)
    assert [str(e) for e in errors] == ["render failed"]
    assert agg.stopped
    agg.push(delta("b"))
    assert agg.pending == 0
