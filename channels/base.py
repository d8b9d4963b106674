"""
Messaging gateway base — outbound delivery contract plus inbound webhook hygiene.

  send(contact_id, kind, payload) -> delivery id      (raises ChannelError)
  handle_inbound(raw webhook body) -> MessageReceived | None

Every send goes through a circuit breaker and is counted in GatewayStats.
Retries are not done here: the action dispatch queue owns retry and backoff.
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from collections import OrderedDict, deque
from enum import Enum
from typing import Any, Optional

from models.schemas import ActionKind, MessageReceived

logger = structlog.get_logger()

MAX_INBOUND_TEXT = 4096


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """A send failed. `retryable` tells the dispatch worker whether to try again."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class GatewayError(ChannelError):
    """The gateway rejected or failed a send."""

    def __init__(self, message: str, channel: str = "", status_code: int = 0, retryable: bool = True):
        self.status_code = status_code
        super().__init__(message, channel, retryable=retryable)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"{channel or 'gateway'} circuit is open, send refused", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  RATE CEILING
# ══════════════════════════════════════════════════════════════

class TokenBucket:
    """
    `rate` tokens per second, at most `capacity` banked. acquire() sleeps
    until the next token is due, or gives up when that is past the timeout.
    """

    def __init__(self, rate: float = 100.0, capacity: int = 100):
        self.rate = max(rate, 1e-6)
        self.capacity = max(capacity, 1)
        self._tokens = float(self.capacity)
        self._stamp = time.monotonic()
        self._lock = asyncio.Lock()

    def _take(self) -> float:
        """Take a token and return 0, or return the seconds until one is available."""
        now = time.monotonic()
        self._tokens = min(self.capacity, self._tokens + (now - self._stamp) * self.rate)
        self._stamp = now
        if self._tokens >= 1:
            self._tokens -= 1
            return 0.0
        return (1 - self._tokens) / self.rate

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                wait = self._take()
            if wait == 0:
                return True
            if time.monotonic() + wait > deadline:
                return False
            await asyncio.sleep(wait)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Opens after `failure_threshold` consecutive failures. Once
    `recovery_timeout` has passed it reads as half-open: the next send is a
    probe that either closes the circuit or opens it again.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._open = False
        self._opened_at = 0.0
        self._consecutive = 0
        self._failures = 0
        self._successes = 0

    @property
    def state(self) -> BreakerState:
        if not self._open:
            return BreakerState.CLOSED
        if time.monotonic() - self._opened_at >= self.recovery_timeout:
            return BreakerState.HALF_OPEN
        return BreakerState.OPEN

    def allows_request(self) -> bool:
        return self.state != BreakerState.OPEN

    def on_success(self) -> None:
        self._successes += 1
        self._consecutive = 0
        self._open = False

    def on_failure(self) -> None:
        self._failures += 1
        self._consecutive += 1
        if self.state == BreakerState.HALF_OPEN or self._consecutive >= self.failure_threshold:
            self._open = True
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", consecutive_failures=self._consecutive)

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_failures": self._consecutive,
            "total_failures": self._failures,
            "total_successes": self._successes,
        }


# ══════════════════════════════════════════════════════════════
#  STATS
# ══════════════════════════════════════════════════════════════

class GatewayStats:
    """Counters plus a bounded window of latencies and recent errors."""

    def __init__(self, gateway: str):
        self.gateway = gateway
        self.sent = 0
        self.failed = 0
        self._latencies: deque[float] = deque(maxlen=1000)
        self._errors: deque[str] = deque(maxlen=10)

    def sent_ok(self, latency_ms: float) -> None:
        self.sent += 1
        self._latencies.append(latency_ms)

    def send_failed(self, error: str) -> None:
        self.failed += 1
        self._errors.append(error)

    def to_dict(self) -> dict[str, Any]:
        attempts = self.sent + self.failed
        return {
            "gateway": self.gateway,
            "sent": self.sent,
            "failed": self.failed,
            "avg_latency_ms": round(sum(self._latencies) / len(self._latencies), 1) if self._latencies else 0.0,
            "failure_rate": round(self.failed / attempts, 4) if attempts else 0.0,
            "recent_errors": list(self._errors),
        }


# ══════════════════════════════════════════════════════════════
#  INBOUND HYGIENE
# ══════════════════════════════════════════════════════════════

class RecentMessageIds:
    """Webhook redelivery filter: remembers message ids for `ttl_seconds`."""

    def __init__(self, ttl_seconds: float = 300.0, max_entries: int = 10_000):
        self.ttl = ttl_seconds
        self.max_entries = max_entries
        self._seen: OrderedDict[str, float] = OrderedDict()

    def seen_before(self, message_id: str) -> bool:
        now = time.monotonic()
        while self._seen and (
            len(self._seen) >= self.max_entries
            or next(iter(self._seen.values())) < now - self.ttl
        ):
            self._seen.popitem(last=False)
        if message_id in self._seen:
            return True
        self._seen[message_id] = now
        return False


def clean_text(text: str, max_length: int = MAX_INBOUND_TEXT) -> str:
    """Drop control characters other than tab and newlines, then truncate."""
    if not text:
        return ""
    kept = "".join(c for c in text if c in "\t\n\r" or ord(c) >= 32)
    return kept[:max_length]


# ══════════════════════════════════════════════════════════════
#  MESSAGING GATEWAY
# ══════════════════════════════════════════════════════════════

class MessagingGateway(abc.ABC):
    """
    Subclasses implement _do_send and, for provider webhooks, _parse_inbound.
    Failures must surface as ChannelError so the dispatch worker can nack.
    """

    name: str = "gateway"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.breaker = CircuitBreaker(failure_threshold, recovery_timeout)
        self.stats = GatewayStats(self.name)
        self._recent_ids = RecentMessageIds()

    @abc.abstractmethod
    async def _do_send(self, contact_id: str, kind: ActionKind, payload: dict[str, Any]) -> str:
        """Deliver one action. Returns the gateway's delivery id."""

    async def send(self, contact_id: str, kind: ActionKind, payload: dict[str, Any]) -> str:
        if not self.breaker.allows_request():
            self.stats.send_failed("circuit_open")
            raise CircuitOpenError(self.name)

        started = time.monotonic()
        try:
            delivery_id = await self._do_send(contact_id, ActionKind(kind), payload)
        except ChannelError as e:
            self.breaker.on_failure()
            self.stats.send_failed(str(e))
            raise
        self.breaker.on_success()
        self.stats.sent_ok((time.monotonic() - started) * 1000)
        return delivery_id

    def handle_inbound(self, raw_payload: dict[str, Any]) -> Optional[MessageReceived]:
        """Webhook body → MessageReceived; None for non-messages and redeliveries."""
        parsed = self._parse_inbound(raw_payload)
        if parsed is None:
            return None
        message_id, event = parsed
        if message_id and self._recent_ids.seen_before(message_id):
            logger.info("inbound_duplicate_dropped", gateway=self.name, message_id=message_id)
            return None
        event.text = clean_text(event.text)
        return event

    def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[tuple[str, MessageReceived]]:
        # internal callers post {contactId, text, messageId?}
        contact_id = raw_payload.get("contactId") or raw_payload.get("contact_id")
        text = raw_payload.get("text")
        if not contact_id or text is None:
            return None
        return str(raw_payload.get("messageId") or ""), MessageReceived(contact_id=str(contact_id), text=str(text))

    async def health_check(self) -> dict[str, Any]:
        return {
            "gateway": self.name,
            "circuit_breaker": self.breaker.snapshot(),
            "metrics": self.stats.to_dict(),
        }

    async def close(self) -> None:
        pass
