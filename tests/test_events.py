import asyncio

from fetcher_miner.events import EventBus, ErrorEvent, StatusEvent


class TestEventBus:
    """Fan-out of lifecycle events to bounded subscriber queues"""

    def test_every_subscriber_sees_every_event(self):
        bus = EventBus()
        a = bus.subscribe()
        b = bus.subscribe()
        bus.publish(StatusEvent(active=True, challenge_id="abc"))
        bus.publish(ErrorEvent(message="oops"))
        assert [e.type for e in a.drain()] == ["status", "error"]
        assert [e.type for e in b.drain()] == ["status", "error"]

    def test_late_subscriber_misses_earlier_events(self):
        bus = EventBus()
        bus.publish(StatusEvent(active=True))
        late = bus.subscribe()
        assert late.drain() == []
        bus.publish(StatusEvent(active=False))
        assert [e.active for e in late.drain()] == [False]

    def test_full_queue_drops_oldest(self):
        bus = EventBus(maxsize=3)
        sub = bus.subscribe()
        for i in range(5):
            bus.publish(ErrorEvent(message=str(i)))
        assert [e.message for e in sub.drain()] == ["2", "3", "4"]
        assert sub.dropped == 2

    def test_slow_subscriber_does_not_affect_others(self):
        bus = EventBus(maxsize=2)
        slow = bus.subscribe()
        fast = bus.subscribe(maxsize=10)
        for i in range(4):
            bus.publish(ErrorEvent(message=str(i)))
        assert len(fast.drain()) == 4
        assert len(slow.drain()) == 2

    def test_to_dict_carries_type(self):
        d = StatusEvent(active=True, challenge_id="abc").to_dict()
        assert d == {"type": "status", "active": True, "challenge_id": "abc"}

    def test_async_iteration_ends_on_close(self):
        async def scenario():
            bus = EventBus()
            sub = bus.subscribe()
            bus.publish(StatusEvent(active=True))
            bus.publish(StatusEvent(active=False))
            bus.close()
            return [e.active async for e in sub]

        assert asyncio.run(scenario()) == [True, False]

    def test_closed_subscription_is_detached(self):
        bus = EventBus()
        sub = bus.subscribe()
        sub.close()
        assert bus.subscriber_count == 0
