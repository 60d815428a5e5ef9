"""Tests for the in-memory store and live subscriptions."""

import asyncio

import pytest

from call_signaling.models.call import CallRecord, CallStatus
from call_signaling.store.base import IncomingCallSubscription, Subscription
from call_signaling.utils.errors import StoreUnavailableError, SubscriptionLostError
from conftest import wait_until


def _record(call_id="call-1", callee_id="callee-1"):
    return CallRecord(
        id=call_id,
        caller_id="caller-1",
        callee_id=callee_id,
        channel_name=f"ch-{call_id}",
    )


def _set_status(status):
    def mutate(record):
        record.status = status
        return record

    return mutate


class TestInMemoryStore:
    """Test basic store operations."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        created = await store.create(_record())

        fetched = await store.get("call-1")

        assert fetched == created
        assert fetched.version == 1

    @pytest.mark.asyncio
    async def test_update_increments_version(self, store):
        await store.create(_record())

        updated = await store.update("call-1", _set_status(CallStatus.RINGING))

        assert updated.version == 2
        assert updated.status == CallStatus.RINGING
        assert updated.updated_at >= updated.created_at

    @pytest.mark.asyncio
    async def test_noop_mutator_writes_nothing(self, store):
        await store.create(_record())

        result = await store.update("call-1", lambda record: None)

        assert result.version == 1

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, store):
        created = await store.create(_record())
        created.status = CallStatus.ENDED

        fetched = await store.get("call-1")

        assert fetched.status == CallStatus.DIALING

    @pytest.mark.asyncio
    async def test_unavailable_store_raises(self, store):
        store.available = False

        with pytest.raises(StoreUnavailableError):
            await store.get("call-1")


class TestSubscriptions:
    """Test record and incoming-call subscriptions."""

    @pytest.mark.asyncio
    async def test_record_subscription_delivers_current_then_changes(self, store):
        await store.create(_record())
        seen = []

        async def on_change(record):
            seen.append(record.status)

        subscription = await store.subscribe_record("call-1", on_change)
        await wait_until(lambda: seen == [CallStatus.DIALING])
        await store.update("call-1", _set_status(CallStatus.RINGING))
        await wait_until(lambda: len(seen) == 2)
        await store.update("call-1", _set_status(CallStatus.ACCEPTED))
        await wait_until(lambda: len(seen) == 3)

        assert seen == [CallStatus.DIALING, CallStatus.RINGING, CallStatus.ACCEPTED]
        await subscription.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_releases_stream(self, store):
        await store.create(_record())

        async def on_change(record):
            pass

        subscription = await store.subscribe_record("call-1", on_change)
        assert store.subscriber_count() == 1

        await subscription.close()
        await subscription.close()

        assert subscription.closed
        assert store.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_handler_may_close_its_own_subscription(self, store):
        await store.create(_record())
        seen = []
        holder = {}

        async def on_change(record):
            seen.append(record.version)
            await holder["subscription"].close()

        holder["subscription"] = await store.subscribe_record("call-1", on_change)
        await wait_until(lambda: holder["subscription"].closed)
        await store.update("call-1", _set_status(CallStatus.RINGING))
        await asyncio.sleep(0.02)

        assert seen == [1]
        assert store.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_reconnect_catches_up_without_duplicates(self, store):
        await store.create(_record())
        versions = []

        async def on_change(record):
            versions.append(record.version)

        subscription = await store.subscribe_record("call-1", on_change)
        await wait_until(lambda: versions == [1])
        await store.update("call-1", _set_status(CallStatus.RINGING))
        await wait_until(lambda: versions == [1, 2])

        store.drop_connections()
        await wait_until(lambda: store.subscriber_count() == 1 and not subscription.closed)
        await store.update("call-1", _set_status(CallStatus.ACCEPTED))
        await wait_until(lambda: len(versions) == 3)
        await asyncio.sleep(0.02)

        assert versions == [1, 2, 3]
        await subscription.close()

    @pytest.mark.asyncio
    async def test_change_during_outage_is_delivered_after_reconnect(self, store):
        await store.create(_record())
        statuses = []

        async def on_change(record):
            statuses.append(record.status)

        subscription = await store.subscribe_record("call-1", on_change)
        await wait_until(lambda: statuses == [CallStatus.DIALING])

        store.drop_connections()
        # Written while the subscriber has no open stream
        await store.update("call-1", _set_status(CallStatus.CANCELLED))
        await wait_until(lambda: CallStatus.CANCELLED in statuses)

        assert statuses == [CallStatus.DIALING, CallStatus.CANCELLED]
        await subscription.close()

    @pytest.mark.asyncio
    async def test_subscription_lost_after_retries(self, store):
        await store.create(_record())
        lost = []

        async def on_change(record):
            pass

        async def on_lost(error):
            lost.append(error)

        subscription = await store.subscribe_record("call-1", on_change, on_lost)
        store.available = False
        store.drop_connections()
        await wait_until(lambda: len(lost) == 1)

        assert isinstance(lost[0], SubscriptionLostError)
        assert lost[0].details["attempts"] == 2
        assert subscription.closed

    @pytest.mark.asyncio
    async def test_subscribe_when_unavailable_raises(self, store):
        store.available = False

        async def on_change(record):
            pass

        with pytest.raises(StoreUnavailableError):
            await store.subscribe_record("call-1", on_change)

    @pytest.mark.asyncio
    async def test_incoming_subscription_only_for_callee(self, store):
        received = []

        async def on_new_call(record):
            received.append(record.id)

        subscription = await store.subscribe_incoming("callee-1", on_new_call)
        await store.create(_record("call-1", "callee-1"))
        await store.create(_record("call-2", "callee-2"))
        await wait_until(lambda: received == ["call-1"])
        await asyncio.sleep(0.02)

        assert received == ["call-1"]
        await subscription.close()

    @pytest.mark.asyncio
    async def test_incoming_subscription_skips_finished_calls(self, store):
        received = []

        async def on_new_call(record):
            received.append(record.id)

        subscription = await store.subscribe_incoming("callee-1", on_new_call)
        finished = _record("call-done", "callee-1")
        finished.status = CallStatus.CANCELLED
        await store.create(finished)
        await store.create(_record("call-live", "callee-1"))
        await wait_until(lambda: received == ["call-live"])

        await subscription.close()

    @pytest.mark.asyncio
    async def test_incoming_call_created_during_reconnect_is_delivered(self, store):
        received = []

        async def on_new_call(record):
            received.append(record.id)

        subscription = await store.subscribe_incoming("callee-1", on_new_call)
        await asyncio.sleep(0.01)

        store.drop_connections()
        # Published behind the drop, so only the reconnect scan can find it
        await store.create(_record("call-1", "callee-1"))
        await wait_until(lambda: received == ["call-1"])
        await asyncio.sleep(0.02)

        assert received == ["call-1"]
        assert store.subscriber_count(store._incoming_channel("callee-1")) == 1
        await subscription.close()

    @pytest.mark.asyncio
    async def test_list_ringing_returns_open_calls_for_callee(self, store):
        await store.create(_record("call-1", "callee-1"))
        await store.create(_record("call-2", "callee-2"))
        await store.create(_record("call-3", "callee-1"))
        await store.update("call-3", _set_status(CallStatus.CANCELLED))

        open_calls = await store.list_ringing("callee-1")

        assert [record.id for record in open_calls] == ["call-1"]

    def test_incoming_dedup_remembers_recent_calls_only(self):
        async def noop(record):
            pass

        subscription = IncomingCallSubscription(channel="c", open_stream=None, handler=noop)
        subscription.max_seen = 2

        assert subscription._should_deliver(_record("call-1"))
        assert subscription._should_deliver(_record("call-2"))
        assert not subscription._should_deliver(_record("call-2"))
        assert subscription._should_deliver(_record("call-3"))

        assert list(subscription._seen) == ["call-2", "call-3"]

    @pytest.mark.asyncio
    async def test_lock_released_once_call_is_final(self, store):
        await store.create(_record())
        await store.update("call-1", _set_status(CallStatus.RINGING))
        assert "call-1" in store._locks

        await store.update("call-1", _set_status(CallStatus.DECLINED))

        assert "call-1" not in store._locks

    def test_backoff_doubles_up_to_cap(self):
        async def noop(record):
            pass

        subscription = Subscription(
            channel="c", open_stream=None, handler=noop, base_delay=0.5, max_delay=3.0
        )

        assert [subscription.backoff_delay(n) for n in range(1, 5)] == [0.5, 1.0, 2.0, 3.0]
