"""Tests for the in-process Event Channel."""

import asyncio

import pytest

from intent_engine.events.channel import ActionEvent, EventChannel


def _make_event(tenant_id: str = "tenant_a", event_type: str = "action.completed") -> ActionEvent:
    return ActionEvent(type=event_type, tenant_id=tenant_id, user_id="user_1", action_type="archive")


class TestEventChannel:
    @pytest.mark.asyncio
    async def test_subscribers_receive_their_tenant_only(self):
        channel = EventChannel()
        tenant_a = channel.subscribe("tenant_a")
        tenant_b = channel.subscribe("tenant_b")
        everyone = channel.subscribe()

        delivered = channel.publish(_make_event("tenant_a"))

        assert delivered == 2
        assert (await tenant_a.get(timeout=1)).tenant_id == "tenant_a"
        assert (await everyone.get(timeout=1)).tenant_id == "tenant_a"
        assert tenant_b.queue.empty()

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        channel = EventChannel(queue_size=2)
        subscription = channel.subscribe("tenant_a")

        for event_type in ("first", "second", "third"):
            channel.publish(_make_event(event_type=event_type))

        assert subscription.dropped == 1
        assert (await subscription.get(timeout=1)).type == "second"
        assert (await subscription.get(timeout=1)).type == "third"

    @pytest.mark.asyncio
    async def test_get_times_out_when_idle(self):
        subscription = EventChannel().subscribe("tenant_a")
        with pytest.raises(asyncio.TimeoutError):
            await subscription.get(timeout=0.01)

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self):
        channel = EventChannel()
        subscription = channel.subscribe("tenant_a")
        assert channel.subscriber_count() == 1

        subscription.close()

        assert channel.subscriber_count() == 0
        assert channel.publish(_make_event()) == 0
        assert channel.published == 1

    def test_events_get_ids(self):
        first, second = _make_event(), _make_event()
        assert first.id.startswith("evt_")
        assert first.id != second.id
