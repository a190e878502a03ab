"""
Exactly-once terminal notifications.

A job's "Video generated!" / "Generation failed" notice must fire once,
however many polls observe the terminal record and however often the stage
is reopened. The dedup key comes from durable state (the dispatch marker,
plus the output URL for completions) and is claimed in up to three places,
in order:

  1. an in-process set (check-and-set with no await in between)
  2. Redis SET NX, when a Redis client is configured (cross-process)
  3. the stage record's `notified_key` column (survives reopen/restart)
"""

import asyncio
import logging
from typing import Callable, Literal

from redis.exceptions import RedisError

from .. import metrics
from .errors import StoreError
from .models import Notification, StageRecord

logger = logging.getLogger(__name__)

CLAIM_PREFIX = "notify:"
CLAIM_TTL = 7 * 24 * 3600  # one week

TerminalKind = Literal["completed", "failed"]
NotificationSink = Callable[[Notification], None]

TITLES = {
    "completed": "{label} generated!",
    "failed": "{label} generation failed",
}


def log_sink(notification: Notification):
    level = logging.INFO if notification.kind == "completed" else logging.WARNING
    logger.log(level, f"[{notification.pipeline_id}/{notification.stage_key.value}] {notification.title} {notification.message}".rstrip())


def notification_key(record: StageRecord, kind: TerminalKind) -> str:
    if kind == "completed":
        marker = f"{record.generation_started_at or ''}|{record.output_url or ''}"
    else:
        marker = record.generation_started_at or record.updated_at or ""
    return f"{record.pipeline_id}:{record.stage_key.value}:{kind}:{marker}"


class NotificationGuard:
    def __init__(
        self,
        store,
        sink: NotificationSink = log_sink,
        redis_client=None,
    ):
        self._store = store
        self._sink = sink
        self._redis = redis_client
        self._announced: set[str] = set()

    async def _claim_in_redis(self, key: str) -> bool:
        if self._redis is None:
            return True
        try:
            claimed = await asyncio.to_thread(
                self._redis.set, f"{CLAIM_PREFIX}{key}", "1", nx=True, ex=CLAIM_TTL
            )
        except RedisError as e:
            logger.warning(f"Redis claim failed for {key}, relying on record store: {e}")
            return True
        return bool(claimed)

    async def notify_once(
        self,
        record: StageRecord,
        kind: TerminalKind,
        label: str = "Stage",
        message: str = "",
    ) -> bool:
        """Fire the notification for this job unless it was already fired. Returns True if fired."""
        key = notification_key(record, kind)
        if key in self._announced or record.notified_key == key:
            logger.debug(f"Notification {key} already sent")
            return False
        self._announced.add(key)

        if not await self._claim_in_redis(key):
            logger.info(f"Notification {key} claimed by another worker")
            return False

        try:
            await self._store.update_stage(record.ref, notified_key=key)
        except StoreError as e:
            # The in-process set still blocks repeats for this session
            logger.warning(f"Could not persist notified_key for {record.ref}: {e}")

        self._sink(Notification(
            key=key,
            pipeline_id=record.pipeline_id,
            stage_key=record.stage_key,
            kind=kind,
            title=TITLES[kind].format(label=label),
            message=message,
            refunded_credits=record.refunded_credits if kind == "failed" else None,
        ))
        metrics.inc_counter(f"notifications.{kind}")
        return True


def failure_message(record: StageRecord) -> str:
    message = record.error_message or "Unknown error"
    if record.refunded_credits:
        message = f"{message}. {record.refunded_credits:.2f} credits were refunded."
    return message