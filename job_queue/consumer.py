"""
Queue Consumers — workers that drain the flow queues.

Runs as async tasks inside the application process. For horizontal scaling,
deploy multiple processes with the same consumer_group; Redis Streams
delivers each job to exactly one consumer.

Topology:
  ┌──────────────┐        ┌─────────────────┐       ┌──────────────────┐
  │ Exec. Runner │──pub──▶│ flow:actions     │──────▶│ ActionDispatch   │──▶ gateway
  └──────┬───────┘        └─────────────────┘       │ Worker (pool)    │
         │                         ▲                 └───────┬──────────┘
         │ timer                   │ promote                 │ nack
         ▼                         │                         ▼
  ┌─────────────────┐      ┌───────┴─────────┐       ┌─────────────────┐
  │ flow:delayed     │─────▶│ DelayedJob      │       │ flow:delayed     │
  │ (sorted set)     │      │ Promoter        │       │ (retry backoff)  │
  └─────────────────┘      └───────┬─────────┘       └─────────────────┘
                                   ▼                         │ exhausted
                           ┌─────────────────┐               ▼
                           │ flow:timers      │──▶ TimerConsumer ──▶ engine.handle(TimerFired)
                           └─────────────────┘       ┌─────────────────┐
                                                      │ flow:dlq         │
                                                      └─────────────────┘
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Optional

from channels.base import ChannelError, MessagingGateway, TokenBucket
from config.settings import Settings, get_settings
from database.store_base import BaseExecutionStore
from job_queue.message_queue import (
    MessageQueue, QueueJob, Queues,
    get_message_queue,
)
from models.schemas import TimerFired

logger = structlog.get_logger()


class ActionDispatchWorker:
    """
    Delivers OutboundActions from `flow:actions` through the messaging gateway.

    - bounded concurrency (semaphore, `worker_concurrency`)
    - rate ceiling (token bucket, `rate_per_second` / `rate_burst`)
    - per-execution ordering (one in-flight send per execution)
    - failures are nacked: retried with exponential backoff, then dead-lettered
      and recorded in the execution's `deliveryFailures` metadata

    Usage:
        worker = ActionDispatchWorker(gateway, store, queue)
        await worker.start_background()
        await worker.stop()
    """

    def __init__(
        self,
        gateway: MessagingGateway,
        store: BaseExecutionStore,
        queue: MessageQueue = None,
        settings: Settings = None,
        consumer_name: str = "",
        rate_limit_timeout: float = 5.0,
    ):
        settings = settings or get_settings()
        self.gateway = gateway
        self.store = store
        self.queue = queue or get_message_queue()
        self.consumer_group = settings.queue.consumer_group
        self.consumer_name = consumer_name
        self.concurrency = settings.queue.worker_concurrency
        self.backoff_base = settings.queue.retry_backoff_base
        self.rate_limit_timeout = rate_limit_timeout
        self.rate_limiter = TokenBucket(
            rate=settings.queue.rate_per_second,
            capacity=settings.queue.rate_burst,
        )
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._execution_locks: dict[str, asyncio.Lock] = {}
        self._pending: dict[str, int] = {}
        self._inflight: set[asyncio.Task] = set()
        self._tasks: list[asyncio.Task] = []

    async def start(self):
        """Start consuming — blocks until stop() is called."""
        logger.info("action_worker_starting",
                    group=self.consumer_group,
                    concurrency=self.concurrency)
        await self.queue.consume(
            queue=Queues.ACTIONS,
            handler=self._handle_job,
            consumer_group=self.consumer_group,
            consumer_name=self.consumer_name,
        )

    async def start_background(self) -> asyncio.Task:
        task = asyncio.create_task(self.start())
        self._tasks.append(task)
        return task

    async def stop(self):
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        await self.drain()
        logger.info("action_worker_stopped")

    async def drain(self):
        """Wait for every in-flight delivery to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight))

    async def _handle_job(self, job: QueueJob):
        """Reserve a slot, then deliver in the background so the consume loop keeps pulling.

        Returns the delivery task; the queue acknowledges the job once it finishes.
        """
        await self._semaphore.acquire()
        self._pending[job.execution_id] = self._pending.get(job.execution_id, 0) + 1
        lock = self._execution_locks.setdefault(job.execution_id, asyncio.Lock())
        task = asyncio.create_task(self._deliver(job, lock))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _deliver(self, job: QueueJob, lock: asyncio.Lock):
        try:
            async with lock:
                await self.process(job)
        finally:
            self._semaphore.release()
            remaining = self._pending.get(job.execution_id, 1) - 1
            if remaining <= 0:
                self._pending.pop(job.execution_id, None)
                self._execution_locks.pop(job.execution_id, None)
            else:
                self._pending[job.execution_id] = remaining

    async def process(self, job: QueueJob) -> bool:
        """Deliver one job. Returns True when the gateway accepted it."""
        action = job.to_action()
        logger.info("processing_action",
                    job_id=job.job_id,
                    execution_id=job.execution_id,
                    contact_id=action.contact_id,
                    kind=action.kind.value,
                    attempt=job.attempt)

        if not await self.rate_limiter.acquire(timeout=self.rate_limit_timeout):
            await self._fail(job, "rate limit wait exceeded", retryable=True)
            return False

        try:
            delivery_id = await self.gateway.send(action.contact_id, action.kind, action.payload)
        except ChannelError as e:
            await self._fail(job, str(e), retryable=e.retryable)
            return False
        except Exception as e:
            logger.error("action_delivery_error",
                         job_id=job.job_id,
                         error=str(e),
                         exc_info=True)
            await self._fail(job, str(e), retryable=True)
            return False

        logger.info("action_delivered",
                    job_id=job.job_id,
                    execution_id=job.execution_id,
                    delivery_id=delivery_id)
        return True

    async def _fail(self, job: QueueJob, error: str, retryable: bool):
        if not retryable:
            job.max_attempts = job.attempt + 1
        if await self.queue.nack(Queues.ACTIONS, job, backoff_seconds=self.backoff_base):
            logger.warning("action_delivery_retry",
                           job_id=job.job_id,
                           attempt=job.attempt + 1,
                           error=error)
            return

        logger.error("action_delivery_exhausted",
                     job_id=job.job_id,
                     execution_id=job.execution_id,
                     node_id=job.node_id,
                     attempts=job.attempt + 1,
                     error=error)
        recorded = await self.store.append_metadata_entry(job.execution_id, "deliveryFailures", {
            "nodeId": job.node_id,
            "kind": job.payload.get("kind", ""),
            "attempts": job.attempt + 1,
            "error": error,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        if not recorded:
            logger.warning("delivery_failure_not_recorded", execution_id=job.execution_id)


class TimerConsumer:
    """Turns due jobs on `flow:timers` into TimerFired events for the engine."""

    def __init__(
        self,
        engine,  # core.engine.FlowEngine
        queue: MessageQueue = None,
        settings: Settings = None,
        consumer_name: str = "",
    ):
        settings = settings or get_settings()
        self.engine = engine
        self.queue = queue or get_message_queue()
        self.consumer_group = settings.queue.consumer_group
        self.consumer_name = consumer_name
        self._tasks: list[asyncio.Task] = []

    async def start(self):
        logger.info("timer_consumer_starting", group=self.consumer_group)
        await self.queue.consume(
            queue=Queues.TIMERS,
            handler=self.handle_job,
            consumer_group=self.consumer_group,
            consumer_name=self.consumer_name,
        )

    async def start_background(self) -> asyncio.Task:
        task = asyncio.create_task(self.start())
        self._tasks.append(task)
        return task

    async def stop(self):
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("timer_consumer_stopped")

    async def handle_job(self, job: QueueJob):
        event = TimerFired(
            execution_id=job.execution_id,
            node_id=job.node_id or None,
            job_id=job.job_id,
        )
        await self.engine.handle(event)


# ──────────────────────────────────────────────────────────────
#  Delayed Job Promoter
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """
    Background task that periodically moves delayed jobs (timers and
    delivery retries) whose scheduled_at has arrived into their target queue.

    For Redis: ZRANGEBYSCORE + ZREM claim + XADD.
    For in-memory: the queue also promotes on its own loop.
    """

    def __init__(self, queue: MessageQueue = None, interval_seconds: float = 1.0):
        self.queue = queue or get_message_queue()
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("delayed_promoter_started", interval=self.interval)
        while True:
            try:
                await self.queue.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.interval)
