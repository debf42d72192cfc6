import asyncio

import pytest

from ptz_link.channel import LoopbackChannel
from ptz_link.clock_sync import ClockOffset, ClockOffsetEstimator, Stamp, answer_ping
from ptz_link.errors import ClockDomainError
from ptz_link.messages import Ping
from ptz_link.scheduler import AsyncioScheduler


def _remote_responder(channel, scheduler, skew_ms):
    """Answer pings as a peer whose clock runs skew_ms ahead."""

    def on_message(message):
        if isinstance(message, Ping):
            channel.send(answer_ping(message, scheduler.now() + skew_ms))

    channel.add_listener(on_message)


def test_symmetric_delay_gives_exact_offset(scheduler):
    local, remote = LoopbackChannel.pair(scheduler, latency_ms=10.0)
    local.open()
    _remote_responder(remote, scheduler, skew_ms=500.0)
    results = []

    estimator = ClockOffsetEstimator(local, scheduler)
    estimator.start(results.append)
    scheduler.advance(1000)

    assert len(results) == 1
    assert results[0].offset_ms == pytest.approx(500.0)
    assert results[0].samples == 10
    assert not results[0].degraded
    assert estimator.current == results[0]


def test_finishes_early_when_all_samples_arrive(scheduler):
    local, remote = LoopbackChannel.pair(scheduler, latency_ms=10.0)
    local.open()
    _remote_responder(remote, scheduler, skew_ms=0.0)

    estimator = ClockOffsetEstimator(local, scheduler, samples=3, ping_interval_ms=50.0)
    estimator.start()
    # Pings at 0, 50, 100; last pong back at 120
    scheduler.advance(120)

    assert not estimator.running
    assert estimator.current.samples == 3


def test_no_replies_yields_degraded_zero_offset(scheduler):
    local, remote = LoopbackChannel.pair(scheduler, drop=lambda raw: True)
    local.open()
    _remote_responder(remote, scheduler, skew_ms=250.0)

    estimator = ClockOffsetEstimator(local, scheduler)
    estimator.start()
    scheduler.advance(999)
    assert estimator.running

    scheduler.advance(1)
    assert estimator.current == ClockOffset(offset_ms=0.0, samples=0, degraded=True)


def test_lost_ping_shrinks_sample_set(scheduler):
    local, remote = LoopbackChannel.pair(
        scheduler, latency_ms=5.0, drop=lambda raw: '"t1": 0.0' in raw
    )
    local.open()
    _remote_responder(remote, scheduler, skew_ms=-40.0)

    estimator = ClockOffsetEstimator(local, scheduler)
    estimator.start()
    scheduler.advance(1000)

    assert estimator.current.samples == 9
    assert estimator.current.offset_ms == pytest.approx(-40.0)


def test_invalidate_drops_offset_and_running_burst(scheduler):
    local, remote = LoopbackChannel.pair(scheduler, latency_ms=10.0)
    local.open()
    _remote_responder(remote, scheduler, skew_ms=0.0)
    results = []

    estimator = ClockOffsetEstimator(local, scheduler)
    estimator.start(results.append)
    scheduler.advance(30)
    estimator.invalidate()
    scheduler.advance(2000)

    assert estimator.current is None
    assert not estimator.running
    assert results == [ClockOffset(offset_ms=0.0, samples=0, degraded=True)]


def test_awaiting_estimate_resolves_when_channel_closes():
    async def scenario():
        scheduler = AsyncioScheduler()
        local, remote = LoopbackChannel.pair(scheduler, latency_ms=50.0)
        local.open()
        _remote_responder(remote, scheduler, skew_ms=0.0)
        estimator = ClockOffsetEstimator(local, scheduler)
        local.on_close(estimator.invalidate)

        task = asyncio.ensure_future(estimator.estimate())
        await asyncio.sleep(0.01)
        local.close()
        return await asyncio.wait_for(task, 0.5)

    offset = asyncio.run(scenario())

    assert offset.degraded
    assert offset.samples == 0


def test_estimator_can_be_restarted_after_invalidate(scheduler):
    local, remote = LoopbackChannel.pair(scheduler, latency_ms=2.0)
    local.open()
    _remote_responder(remote, scheduler, skew_ms=100.0)

    estimator = ClockOffsetEstimator(local, scheduler, samples=2)
    estimator.start()
    scheduler.advance(1000)
    estimator.invalidate()
    estimator.start()
    scheduler.advance(1000)

    assert estimator.current.offset_ms == pytest.approx(100.0)


def test_rejects_zero_samples(scheduler, channel_pair):
    with pytest.raises(ValueError):
        ClockOffsetEstimator(channel_pair[0], scheduler, samples=0)


def test_stamps_from_different_domains_cannot_be_subtracted():
    with pytest.raises(ClockDomainError):
        Stamp.remote(100.0) - Stamp.local(50.0)

    assert Stamp.local(100.0) - Stamp.local(40.0) == 60.0


def test_to_local_applies_offset():
    offset = ClockOffset(offset_ms=500.0, samples=10)

    assert offset.to_local(Stamp.remote(1730.0)) == Stamp.local(1230.0)
    assert offset.to_local(Stamp.local(10.0)) == Stamp.local(10.0)
