from __future__ import annotations

import asyncio

import pytest

from trainyard.events import (
    EventBus,
    EventSink,
    InstanceStatusChanged,
    JobProgress,
    JobStatusChanged,
    NullSink,
)
from trainyard.types import InstanceStatus, JobStatus

pytestmark = [pytest.mark.unit]


class TestHandlers:
    def test_typed_and_wildcard_handlers(self):
        bus = EventBus()
        typed: list[object] = []
        everything: list[object] = []
        bus.on(JobProgress)(typed.append)
        bus.on()(everything.append)

        bus.publish(JobStatusChanged(job_id="job-1", status=JobStatus.RUNNING))
        bus.publish(JobProgress(job_id="job-1", progress=10.0))

        assert [type(e) for e in typed] == [JobProgress]
        assert len(everything) == 2

    def test_failing_handler_does_not_block_others(self):
        bus = EventBus()
        seen: list[object] = []

        @bus.on(JobStatusChanged)
        def broken(_: object) -> None:
            raise RuntimeError("boom")

        bus.on(JobStatusChanged)(seen.append)
        bus.publish(JobStatusChanged(job_id="job-1", status=JobStatus.FAILED))

        assert len(seen) == 1

    def test_clear(self):
        bus = EventBus()
        seen: list[object] = []
        bus.on()(seen.append)
        bus.clear()
        bus.publish(JobProgress(job_id="job-1", progress=1.0))
        assert seen == []

    def test_sinks(self):
        assert isinstance(EventBus(), EventSink)
        assert isinstance(NullSink(), EventSink)
        NullSink().publish(JobProgress(job_id="job-1", progress=1.0))


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_only_events_for_the_job(self):
        bus = EventBus()
        stream = bus.subscribe("job-1")
        first = asyncio.ensure_future(anext(stream))
        await asyncio.sleep(0)
        assert bus.subscriber_count("job-1") == 1

        bus.publish(JobProgress(job_id="job-2", progress=50.0))
        bus.publish(InstanceStatusChanged(instance_id="inst-1", job_id="job-1", status=InstanceStatus.RUNNING))

        event = await asyncio.wait_for(first, timeout=1.0)
        assert event == InstanceStatusChanged(
            instance_id="inst-1", job_id="job-1", status=InstanceStatus.RUNNING,
        )

        await stream.aclose()
        assert bus.subscriber_count("job-1") == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops(self):
        bus = EventBus(queue_size=1)
        stream = bus.subscribe("job-1")
        first = asyncio.ensure_future(anext(stream))
        await asyncio.sleep(0)

        for n in range(3):
            bus.publish(JobProgress(job_id="job-1", progress=float(n)))

        assert (await asyncio.wait_for(first, timeout=1.0)).progress == 0.0
        await stream.aclose()
