"""
Job Queue — Decouples "decide to send" from "actually sent", and carries timers.

- The execution runner PUBLISHES outbound actions and delayed timer jobs
- ActionDispatchWorker CONSUMES actions and delivers them through the gateway
- TimerConsumer CONSUMES due timers and feeds TimerFired back into the engine
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
from job_queue.message_queue import (
    JobKind,
    MessageQueue,
    InMemoryMessageQueue,
    QueueJob,
    Queues,
    RedisMessageQueue,
    create_message_queue,
    get_message_queue,
    reset_message_queue,
)
from job_queue.consumer import ActionDispatchWorker, DelayedJobPromoter, TimerConsumer

__all__ = [
    "JobKind", "QueueJob", "Queues",
    "MessageQueue", "RedisMessageQueue", "InMemoryMessageQueue",
    "create_message_queue", "get_message_queue", "reset_message_queue",
    "ActionDispatchWorker", "TimerConsumer", "DelayedJobPromoter",
]
