"""Tests for exactly-once terminal notifications."""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from studio.pipeline.models import GenerationStatus, PipelineType, StageKey, StageRef
from studio.pipeline.notifications import NotificationGuard, failure_message, notification_key

from conftest import USER_ID


class FakeRedis:
    """Just enough of redis.Redis.set(nx=, ex=) for claims."""

    def __init__(self, broken: bool = False):
        self.values = {}
        self.broken = broken

    def set(self, name, value, nx=False, ex=None):
        if self.broken:
            raise RedisConnectionError("connection refused")
        if nx and name in self.values:
            return None
        self.values[name] = value
        return True


async def _completed_stage(store, url="https://x/a.mp4", marker="2026-10-18T10:00:00+00:00"):
    pipeline = await store.create_pipeline(USER_ID, PipelineType.CLIPS)
    ref = StageRef(pipeline.id, StageKey.ANIMATE)
    await store.update_stage(ref, generation_started_at=marker)
    return await store.update_stage(
        ref, status=GenerationStatus.COMPLETED, output={"url": url}, complete=True
    )


class TestNotifyOnce:
    @pytest.mark.asyncio
    async def test_duplicate_polls_notify_once(self, store, guard, notifications):
        record = await _completed_stage(store)

        results = [await guard.notify_once(record, "completed", label="Animate") for _ in range(5)]

        assert results == [True, False, False, False, False]
        assert len(notifications) == 1
        assert notifications[0].title == "Animate generated!"
        assert notifications[0].stage_key == StageKey.ANIMATE

    @pytest.mark.asyncio
    async def test_concurrent_observations_notify_once(self, store, guard, notifications):
        record = await _completed_stage(store)

        await asyncio.gather(*[guard.notify_once(record, "completed") for _ in range(10)])

        assert len(notifications) == 1

    @pytest.mark.asyncio
    async def test_remount_does_not_renotify(self, store, guard, notifications):
        record = await _completed_stage(store)
        await guard.notify_once(record, "completed")

        remounted = NotificationGuard(store, sink=notifications.append)
        fresh = await store.get_stage(record.ref)

        assert fresh.notified_key == notification_key(record, "completed")
        assert await remounted.notify_once(fresh, "completed") is False
        assert len(notifications) == 1

    @pytest.mark.asyncio
    async def test_new_run_with_same_url_notifies_again(self, store, guard, notifications):
        record = await _completed_stage(store)
        await guard.notify_once(record, "completed")

        rerun = await store.update_stage(record.ref, generation_started_at="2026-10-18T11:00:00+00:00")
        assert await guard.notify_once(rerun, "completed") is True
        assert len(notifications) == 2

    @pytest.mark.asyncio
    async def test_failure_notification_carries_refund(self, store, guard, notifications):
        pipeline = await store.create_pipeline(USER_ID, PipelineType.CLIPS)
        ref = StageRef(pipeline.id, StageKey.FIRST_FRAME)
        record = await store.update_stage(
            ref,
            status=GenerationStatus.FAILED,
            generation_started_at="2026-10-18T10:00:00+00:00",
            error_message="Upstream model timed out",
            refunded_credits=0.15,
        )

        await guard.notify_once(record, "failed", label="First Frame", message=failure_message(record))

        note = notifications[0]
        assert note.title == "First Frame generation failed"
        assert note.message == "Upstream model timed out. 0.15 credits were refunded."
        assert note.refunded_credits == 0.15


class TestRedisClaims:
    @pytest.mark.asyncio
    async def test_claim_shared_across_workers(self, store, notifications):
        redis_client = FakeRedis()
        record = await _completed_stage(store)
        worker_a = NotificationGuard(store, sink=notifications.append, redis_client=redis_client)
        worker_b = NotificationGuard(store, sink=notifications.append, redis_client=redis_client)

        # Both workers hold the same stale copy, read before either persisted a key
        assert await worker_a.notify_once(record, "completed") is True
        assert await worker_b.notify_once(record, "completed") is False
        assert len(notifications) == 1
        assert any(key.startswith("notify:") for key in redis_client.values)

    @pytest.mark.asyncio
    async def test_redis_outage_falls_back_to_record_store(self, store, notifications):
        record = await _completed_stage(store)
        guard = NotificationGuard(store, sink=notifications.append, redis_client=FakeRedis(broken=True))

        assert await guard.notify_once(record, "completed") is True
        assert (await store.get_stage(record.ref)).notified_key is not None


class TestKeys:
    def test_failure_message_without_refund(self):
        from studio.pipeline.models import StageRecord

        record = StageRecord(pipeline_id="p", stage_key=StageKey.SCRIPT, error_message="Bad prompt")
        assert failure_message(record) == "Bad prompt"

    def test_completed_and_failed_keys_differ(self):
        from studio.pipeline.models import StageRecord

        record = StageRecord(
            pipeline_id="p",
            stage_key=StageKey.SCRIPT,
            generation_started_at="2026-10-18T10:00:00+00:00",
        )
        assert notification_key(record, "completed") != notification_key(record, "failed")
        assert notification_key(record, "failed") == "p:script:failed:2026-10-18T10:00:00+00:00"
