"""
Message Queue — Abstract interface with Redis Streams and in-memory backends.

Queue Topology:
  flow:actions         — Outbound MESSAGE/MEDIA actions ready for delivery
  flow:timers          — TimerFired wake-ups for TIMER nodes and ACTION timeouts
  flow:delayed         — Jobs with a future execution time (sorted set in Redis),
                         promoted into their target queue when due; covers both
                         timers and delivery retries
  flow:delayed:index   — job_id → payload (Redis hash), lets resets/cancels
                         remove a pending timer before it fires
  flow:dlq             — Dead-letter queue for permanently failed deliveries

Message Schema:
  {
      "job_id":        unique job identifier (stable across retries),
      "kind":          action | timer,
      "execution_id":  owning FlowExecution,
      "node_id":       node that produced the job,
      "contact_id":    target contact,
      "target_queue":  queue a delayed job lands in when due,
      "attempt":       delivery attempts already made,
      "max_attempts":  ceiling before DLQ,
      "scheduled_at":  ISO timestamp when the job should execute,
      "created_at":    ISO timestamp when the job was enqueued,
      "payload":       OutboundAction wire dict (actions) or {} (timers),
      "metadata":      arbitrary extra data,
  }
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional

from models.schemas import OutboundAction

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Queue Names
# ──────────────────────────────────────────────────────────────

class Queues:
    ACTIONS = "flow:actions"
    TIMERS = "flow:timers"
    DELAYED = "flow:delayed"
    DELAYED_INDEX = "flow:delayed:index"
    DLQ = "flow:dlq"


class JobKind:
    ACTION = "action"
    TIMER = "timer"


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueJob:
    """A unit of work on the queue."""
    kind: str
    execution_id: str
    node_id: str = ""
    contact_id: str = ""
    target_queue: str = Queues.ACTIONS
    attempt: int = 0
    max_attempts: int = 3
    scheduled_at: str = ""
    created_at: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"job_{uuid.uuid4().hex[:12]}"
        if not self.created_at:
            self.created_at = _utcnow().isoformat()
        if not self.scheduled_at:
            self.scheduled_at = self.created_at

    @classmethod
    def for_action(cls, action: OutboundAction) -> QueueJob:
        return cls(
            kind=JobKind.ACTION,
            execution_id=action.execution_id,
            node_id=action.node_id,
            contact_id=action.contact_id,
            target_queue=Queues.ACTIONS,
            attempt=action.attempt,
            max_attempts=action.max_attempts,
            payload=action.to_wire(),
            job_id=action.action_id,
        )

    @classmethod
    def for_timer(cls, execution_id: str, node_id: str, delay_seconds: float, **metadata) -> QueueJob:
        fire_at = _utcnow() + timedelta(seconds=max(delay_seconds, 0))
        return cls(
            kind=JobKind.TIMER,
            execution_id=execution_id,
            node_id=node_id,
            target_queue=Queues.TIMERS,
            max_attempts=1,
            scheduled_at=fire_at.isoformat(),
            metadata=dict(metadata),
        )

    def to_action(self) -> OutboundAction:
        action = OutboundAction.model_validate(self.payload)
        action.attempt = self.attempt
        action.max_attempts = self.max_attempts
        return action

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["payload"] = json.dumps(d["payload"])
        d["metadata"] = json.dumps(d["metadata"])
        d["attempt"] = str(d["attempt"])
        d["max_attempts"] = str(d["max_attempts"])
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        data = dict(data)  # copy
        if isinstance(data.get("payload"), str):
            data["payload"] = json.loads(data["payload"])
        if isinstance(data.get("metadata"), str):
            data["metadata"] = json.loads(data["metadata"])
        data["attempt"] = int(data.get("attempt", 0))
        data["max_attempts"] = int(data.get("max_attempts", 3))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @property
    def scheduled_ts(self) -> float:
        return datetime.fromisoformat(self.scheduled_at).timestamp()

    @property
    def is_scheduled_now(self) -> bool:
        try:
            return _utcnow().timestamp() >= self.scheduled_ts
        except ValueError:
            return True

    @property
    def is_exhausted(self) -> bool:
        return self.attempt + 1 >= self.max_attempts

    def next_retry_job(self, backoff_seconds: float = 2) -> QueueJob:
        """Create a copy with incremented attempt and exponential backoff delay."""
        retry_at = _utcnow() + timedelta(seconds=backoff_seconds * (2 ** self.attempt))
        return QueueJob(
            kind=self.kind,
            execution_id=self.execution_id,
            node_id=self.node_id,
            contact_id=self.contact_id,
            target_queue=self.target_queue,
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            scheduled_at=retry_at.isoformat(),
            created_at=self.created_at,
            payload=self.payload,
            metadata={**self.metadata, "last_failure_at": _utcnow().isoformat()},
            job_id=self.job_id,  # same job_id across retries for tracing
        )


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract message queue interface."""

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def publish(self, queue: str, job: QueueJob):
        """Publish a job to a queue."""
        ...

    @abstractmethod
    async def publish_delayed(self, job: QueueJob):
        """Publish a job that lands in job.target_queue at job.scheduled_at."""
        ...

    @abstractmethod
    async def cancel_delayed(self, job_id: str) -> bool:
        """Remove a pending delayed job. Returns False if it already fired or never existed."""
        ...

    @abstractmethod
    async def consume(
        self,
        queue: str,
        handler: Callable[[QueueJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        """
        Start consuming from a queue. Blocks and calls handler for each job.
        A handler exception routes the job to nack().
        A handler that returns a task has the job acknowledged when that task finishes.
        """
        ...

    @abstractmethod
    async def nack(self, queue: str, job: QueueJob, backoff_seconds: float = 2) -> bool:
        """
        Negative-acknowledge — schedule a retry, or move to DLQ once
        max_attempts is reached. Returns True if a retry was scheduled.
        """
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        """Return the number of pending jobs in a queue."""
        ...

    @abstractmethod
    async def delayed_count(self) -> int:
        ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        """Peek at jobs without consuming them."""
        ...

    @abstractmethod
    async def promote_delayed(self) -> int:
        """Move delayed jobs whose scheduled_at has arrived to their target queue."""
        ...

    def stop(self):
        """Ask running consume() loops to exit."""
        self._running = False

    async def stats(self) -> dict[str, int]:
        return {
            Queues.ACTIONS: await self.queue_length(Queues.ACTIONS),
            Queues.TIMERS: await self.queue_length(Queues.TIMERS),
            Queues.DELAYED: await self.delayed_count(),
            Queues.DLQ: await self.queue_length(Queues.DLQ),
        }


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + Sorted Sets.

    - Action/Timer queues use Redis Streams with consumer groups
    - Delayed queue uses a Sorted Set of job ids (ZRANGEBYSCORE for promotion)
      plus a Hash of payloads; ZREM is the claim, so promotion and
      cancellation never both win
    - DLQ uses a Redis Stream for inspection
    """

    def __init__(self, redis_url: str = "redis://localhost:6379"):
        self._redis_url = redis_url
        self._redis = None
        self._running = False
        self._ack_tasks: set[asyncio.Task] = set()

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        self._running = False
        if self._ack_tasks:
            await asyncio.gather(*list(self._ack_tasks))
        if self._redis:
            await self._redis.aclose()

    async def _ensure_group(self, queue: str, group: str):
        """Create consumer group if it doesn't exist."""
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(queue, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def publish(self, queue: str, job: QueueJob):
        await self._redis.xadd(queue, job.to_dict())
        logger.info("job_published",
                     queue=queue,
                     job_id=job.job_id,
                     kind=job.kind,
                     execution_id=job.execution_id)

    async def publish_delayed(self, job: QueueJob):
        pipe = self._redis.pipeline()
        pipe.hset(Queues.DELAYED_INDEX, job.job_id, json.dumps(job.to_dict()))
        pipe.zadd(Queues.DELAYED, {job.job_id: job.scheduled_ts})
        await pipe.execute()
        logger.info("delayed_job_published",
                     job_id=job.job_id,
                     target=job.target_queue,
                     scheduled_at=job.scheduled_at)

    async def cancel_delayed(self, job_id: str) -> bool:
        removed = await self._redis.zrem(Queues.DELAYED, job_id)
        await self._redis.hdel(Queues.DELAYED_INDEX, job_id)
        if removed:
            logger.info("delayed_job_cancelled", job_id=job_id)
        return bool(removed)

    async def consume(
        self,
        queue: str,
        handler: Callable[[QueueJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        await self._ensure_group(queue, consumer_group)
        self._running = True
        logger.info("consumer_started",
                     queue=queue,
                     group=consumer_group,
                     consumer=consumer_name)

        while self._running:
            try:
                messages = await self._redis.xreadgroup(
                    groupname=consumer_group,
                    consumername=consumer_name,
                    streams={queue: ">"},
                    count=batch_size,
                    block=2000,  # block 2s waiting for messages
                )

                if not messages:
                    continue

                for _stream_name, stream_messages in messages:
                    for message_id, fields in stream_messages:
                        job = QueueJob.from_dict(fields)
                        try:
                            outcome = await handler(job)
                        except Exception as e:
                            logger.error("job_handler_error",
                                         job_id=job.job_id,
                                         error=str(e))
                            await self.nack(queue, job)
                            outcome = None
                        if isinstance(outcome, asyncio.Future):
                            # the handler finishes the job in the background
                            task = asyncio.create_task(
                                self._ack_when_done(outcome, queue, consumer_group, message_id, job.job_id)
                            )
                            self._ack_tasks.add(task)
                            task.add_done_callback(self._ack_tasks.discard)
                        else:
                            await self._redis.xack(queue, consumer_group, message_id)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", queue=queue, error=str(e))
                await asyncio.sleep(1)

    async def _ack_when_done(self, task: asyncio.Future, queue: str, group: str,
                             message_id: str, job_id: str):
        """Acknowledge once the handler's background work finishes; a failed run stays pending."""
        await asyncio.wait({task})
        if task.cancelled() or task.exception() is not None:
            logger.warning("job_left_pending",
                           queue=queue,
                           job_id=job_id,
                           message_id=message_id)
            return
        await self._redis.xack(queue, group, message_id)

    async def nack(self, queue: str, job: QueueJob, backoff_seconds: float = 2) -> bool:
        if job.is_exhausted:
            job.metadata["dlq_reason"] = f"Exceeded {job.max_attempts} attempts"
            await self.publish(Queues.DLQ, job)
            logger.warning("job_moved_to_dlq",
                           job_id=job.job_id,
                           attempts=job.attempt + 1)
            return False
        retry_job = job.next_retry_job(backoff_seconds)
        await self.publish_delayed(retry_job)
        logger.info("job_scheduled_for_retry",
                    job_id=job.job_id,
                    attempt=retry_job.attempt,
                    scheduled_at=retry_job.scheduled_at)
        return True

    async def queue_length(self, queue: str) -> int:
        return await self._redis.xlen(queue)

    async def delayed_count(self) -> int:
        return await self._redis.zcard(Queues.DELAYED)

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        messages = await self._redis.xrange(queue, count=count)
        return [QueueJob.from_dict(fields) for _, fields in messages]

    async def promote_delayed(self) -> int:
        """Move jobs whose scheduled_at <= now from the sorted set to their target stream."""
        now = _utcnow().timestamp()
        ready = await self._redis.zrangebyscore(Queues.DELAYED, "-inf", now)

        promoted = 0
        for job_id in ready:
            if not await self._redis.zrem(Queues.DELAYED, job_id):
                continue  # cancelled or claimed by another promoter
            raw = await self._redis.hget(Queues.DELAYED_INDEX, job_id)
            await self._redis.hdel(Queues.DELAYED_INDEX, job_id)
            if raw is None:
                continue
            job = QueueJob.from_dict(json.loads(raw))
            await self._redis.xadd(job.target_queue, job.to_dict())
            promoted += 1

        if promoted:
            logger.info("delayed_jobs_promoted", count=promoted)
        return promoted


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — no consumer groups or persistence.
    """

    def __init__(self, promote_interval: float = 1.0):
        self._queues: dict[str, asyncio.Queue] = {}
        self._delayed: list[tuple[float, QueueJob]] = []  # (timestamp, job)
        self._dlq: list[QueueJob] = []
        self._running = False
        self._promote_interval = promote_interval
        self._delayed_promoter_task: Optional[asyncio.Task] = None

    def _get_queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def connect(self):
        self._running = True
        self._delayed_promoter_task = asyncio.create_task(self._promote_loop())
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._running = False
        if self._delayed_promoter_task:
            self._delayed_promoter_task.cancel()
            try:
                await self._delayed_promoter_task
            except asyncio.CancelledError:
                pass
            self._delayed_promoter_task = None

    async def publish(self, queue: str, job: QueueJob):
        if queue == Queues.DLQ:
            self._dlq.append(job)
        else:
            await self._get_queue(queue).put(job)
        logger.info("job_published",
                     queue=queue,
                     job_id=job.job_id,
                     kind=job.kind,
                     execution_id=job.execution_id)

    async def publish_delayed(self, job: QueueJob):
        self._delayed.append((job.scheduled_ts, job))
        self._delayed.sort(key=lambda x: x[0])
        logger.info("delayed_job_published",
                     job_id=job.job_id,
                     target=job.target_queue,
                     scheduled_at=job.scheduled_at)

    async def cancel_delayed(self, job_id: str) -> bool:
        before = len(self._delayed)
        self._delayed = [(ts, job) for ts, job in self._delayed if job.job_id != job_id]
        removed = len(self._delayed) < before
        if removed:
            logger.info("delayed_job_cancelled", job_id=job_id)
        return removed

    async def consume(
        self,
        queue: str,
        handler: Callable[[QueueJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        q = self._get_queue(queue)
        self._running = True
        logger.info("consumer_started", queue=queue)

        while self._running:
            try:
                job = await asyncio.wait_for(q.get(), timeout=2.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            try:
                await handler(job)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("job_handler_error",
                             job_id=job.job_id,
                             error=str(e))
                await self.nack(queue, job)

    async def nack(self, queue: str, job: QueueJob, backoff_seconds: float = 2) -> bool:
        if job.is_exhausted:
            job.metadata["dlq_reason"] = f"Exceeded {job.max_attempts} attempts"
            self._dlq.append(job)
            logger.warning("job_moved_to_dlq",
                           job_id=job.job_id,
                           attempts=job.attempt + 1)
            return False
        retry_job = job.next_retry_job(backoff_seconds)
        await self.publish_delayed(retry_job)
        return True

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DLQ:
            return len(self._dlq)
        return self._get_queue(queue).qsize()

    async def delayed_count(self) -> int:
        return len(self._delayed)

    @property
    def dlq(self) -> list[QueueJob]:
        return list(self._dlq)

    @property
    def delayed(self) -> list[QueueJob]:
        return [job for _, job in self._delayed]

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        if queue == Queues.DLQ:
            return self._dlq[:count]
        q = self._get_queue(queue)
        # asyncio.Queue keeps its items in a deque
        return list(q._queue)[:count]

    async def get_nowait(self, queue: str) -> Optional[QueueJob]:
        q = self._get_queue(queue)
        return None if q.empty() else q.get_nowait()

    async def promote_delayed(self, now: Optional[float] = None) -> int:
        now = _utcnow().timestamp() if now is None else now
        ready = [(ts, job) for ts, job in self._delayed if ts <= now]
        self._delayed = [(ts, job) for ts, job in self._delayed if ts > now]

        for _, job in ready:
            await self.publish(job.target_queue, job)

        if ready:
            logger.info("delayed_jobs_promoted", count=len(ready))
        return len(ready)

    async def _promote_loop(self):
        """Background loop to promote delayed jobs."""
        while self._running:
            try:
                await self.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self._promote_interval)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Factory: create the appropriate queue backend."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")

    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        _instance = RedisMessageQueue(redis_url=url)
    else:
        _instance = InMemoryMessageQueue(
            promote_interval=config.get("delayed_promote_interval", 1.0),
        )

    return _instance


def get_message_queue() -> MessageQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_message_queue()
    return _instance


def reset_message_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
