"""Tests for the in-process broadcast channel."""

from __future__ import annotations

import pytest
from conftest import make_samples

from sporesignal.broadcast import BroadcastChannel, PublishFailure
from sporesignal.domain_models import BroadcastMessage, ProgressMessage


def _msg(entity_id: str = "ent-1", value: float = 1.0, job_id: str | None = None):
    return BroadcastMessage(entity_id=entity_id, sample=make_samples([value])[0], job_id=job_id)


@pytest.mark.asyncio
async def test_fan_out_gives_every_subscriber_a_copy() -> None:
    channel = BroadcastChannel()
    async with channel.subscribe() as a, channel.subscribe() as b:
        delivered = channel.publish(_msg(value=3.0))
        assert delivered == 2
        assert (await a.get()).sample.value == 3.0
        assert (await b.get()).sample.value == 3.0
    assert channel.subscriber_count == 0


@pytest.mark.asyncio
async def test_entity_and_job_filters() -> None:
    channel = BroadcastChannel()
    async with (
        channel.subscribe(entity_id="ent-1") as by_entity,
        channel.subscribe(job_id="job-9") as by_job,
    ):
        channel.publish(_msg("ent-2", job_id="job-9"))
        channel.publish(_msg("ent-1", job_id="job-1"))
        channel.publish(
            ProgressMessage(job_id="job-9", entity_id="ent-2", inserted=1, total=2)
        )
        assert [m.entity_id for m in by_entity.drain()] == ["ent-1"]
        job_messages = by_job.drain()
        assert len(job_messages) == 2
        assert isinstance(job_messages[1], ProgressMessage)


@pytest.mark.asyncio
async def test_no_replay_for_late_subscribers() -> None:
    channel = BroadcastChannel()
    channel.publish(_msg(value=1.0))
    async with channel.subscribe() as late:
        assert late.drain() == []
        channel.publish(_msg(value=2.0))
        assert [m.sample.value for m in late.drain()] == [2.0]
    assert channel.published_total == 2


@pytest.mark.asyncio
async def test_full_queue_evicts_oldest_without_blocking() -> None:
    channel = BroadcastChannel(queue_maxsize=2)
    async with channel.subscribe() as slow, channel.subscribe() as fast:
        for value in (1.0, 2.0, 3.0):
            channel.publish(_msg(value=value))
            fast.drain()
        assert [m.sample.value for m in slow.drain()] == [2.0, 3.0]
        assert slow.dropped == 1
        assert fast.dropped == 0


@pytest.mark.asyncio
async def test_subscription_released_when_block_raises() -> None:
    channel = BroadcastChannel()
    with pytest.raises(RuntimeError, match="boom"):
        async with channel.subscribe():
            assert channel.subscriber_count == 1
            raise RuntimeError("boom")
    assert channel.subscriber_count == 0


@pytest.mark.asyncio
async def test_publish_after_close_raises_publish_failure() -> None:
    channel = BroadcastChannel()
    channel.close()
    assert channel.closed
    with pytest.raises(PublishFailure):
        channel.publish(_msg())


@pytest.mark.asyncio
async def test_publish_rejects_unknown_message_type() -> None:
    channel = BroadcastChannel()
    with pytest.raises(PublishFailure, match="Unsupported message type"):
        channel.publish({"entityId": "ent-1"})  # type: ignore[arg-type]
