"""
Tests for the per-task event bus: ordering, drop-on-full and terminal delivery.
"""

import asyncio

import pytest

from pocscan.events import EventBus


class TestDelivery:

    @pytest.mark.asyncio
    async def test_events_delivered_in_order(self):
        bus = EventBus()
        received = []
        bus.register_handler(1, received.append)

        bus.publish(1, "progress", {"n": 1})
        bus.publish(1, "vuln_found", {"n": 2})
        await bus.publish_terminal(1, "completed", {"n": 3})
        await bus.close(1, timeout=2)

        assert [e.event_type for e in received] == ["progress", "vuln_found", "completed"]
        assert [e.data["n"] for e in received] == [1, 2, 3]
        assert received[-1].is_terminal

    @pytest.mark.asyncio
    async def test_async_handler(self):
        bus = EventBus()
        received = []

        async def handler(event):
            await asyncio.sleep(0)
            received.append(event.event_type)

        bus.register_handler(1, handler)
        await bus.publish_terminal(1, "completed", {})
        await bus.close(1, timeout=2)
        assert received == ["completed"]

    @pytest.mark.asyncio
    async def test_handlers_are_per_task(self):
        bus = EventBus()
        first, second = [], []
        bus.register_handler(1, first.append)
        bus.register_handler(2, second.append)

        await bus.publish_terminal(1, "completed", {})
        await bus.publish_terminal(2, "completed", {})
        await bus.close(1, timeout=2)
        await bus.close(2, timeout=2)

        assert [e.task_id for e in first] == [1]
        assert [e.task_id for e in second] == [2]

    @pytest.mark.asyncio
    async def test_register_replaces_previous_handler(self):
        bus = EventBus()
        old, new = [], []
        bus.register_handler(1, old.append)
        bus.register_handler(1, new.append)
        await bus.publish_terminal(1, "completed", {})
        await bus.close(1, timeout=2)
        assert old == []
        assert len(new) == 1

    @pytest.mark.asyncio
    async def test_no_handler_events_are_discarded(self):
        bus = EventBus()
        assert bus.publish(1, "progress", {}) is True
        await bus.publish_terminal(1, "completed", {})
        await bus.close(1, timeout=2)
        assert bus.stats(1) == {"queued": 0, "dropped": 0, "delivered": 0, "terminal_delivered": False}


class TestBackpressure:

    @pytest.mark.asyncio
    async def test_full_queue_drops_non_terminal_events(self):
        bus = EventBus(maxsize=2)
        received = []
        bus.register_handler(1, received.append)

        results = [bus.publish(1, "progress", {"n": i}) for i in range(5)]
        assert results == [True, True, False, False, False]
        assert bus.stats(1)["dropped"] == 3

        await bus.publish_terminal(1, "completed", {})
        await bus.close(1, timeout=2)
        assert [e.event_type for e in received] == ["progress", "progress", "completed"]

    @pytest.mark.asyncio
    async def test_slow_handler_cannot_block_terminal_event(self):
        bus = EventBus(maxsize=1, handler_timeout=0.05)
        seen = []

        async def slow(event):
            seen.append(event.event_type)
            if event.event_type != "completed":
                await asyncio.sleep(10)

        bus.register_handler(1, slow)
        bus.publish(1, "progress", {})
        await asyncio.wait_for(bus.publish_terminal(1, "completed", {}), timeout=2)
        await bus.close(1, timeout=2)
        assert seen == ["progress", "completed"]

    @pytest.mark.asyncio
    async def test_close_skips_backlog_but_delivers_terminal(self):
        bus = EventBus(handler_timeout=1.0)
        seen = []

        async def lagging(event):
            seen.append(event.event_type)
            await asyncio.sleep(0.3)

        bus.register_handler(1, lagging)
        for i in range(20):
            bus.publish(1, "vuln_found", {"n": i})
        await bus.publish_terminal(1, "completed", {})

        await bus.close(1, timeout=0.5)

        assert seen[-1] == "completed"
        assert seen.count("completed") == 1
        assert len(seen) < 21

    @pytest.mark.asyncio
    async def test_stats_report_terminal_delivery(self):
        bus = EventBus()
        bus.register_handler(1, lambda event: None)
        bus.publish(1, "progress", {})
        await bus.publish_terminal(1, "completed", {})
        for _ in range(20):
            if bus.stats(1)["terminal_delivered"]:
                break
            await asyncio.sleep(0.01)
        assert bus.stats(1) == {"queued": 0, "dropped": 0, "delivered": 2, "terminal_delivered": True}
        await bus.close(1, timeout=2)


    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_consumer(self):
        bus = EventBus()
        seen = []

        def flaky(event):
            seen.append(event.event_type)
            if event.event_type == "progress":
                raise ValueError("bad subscriber")

        bus.register_handler(1, flaky)
        bus.publish(1, "progress", {})
        await bus.publish_terminal(1, "completed", {})
        await bus.close(1, timeout=2)
        assert seen == ["progress", "completed"]


@pytest.mark.asyncio
async def test_shutdown_cancels_consumers():
    bus = EventBus()
    bus.publish(1, "progress", {})
    await bus.shutdown()
    assert bus.stats(1) == {"queued": 0, "dropped": 0, "delivered": 0, "terminal_delivered": False}
