"""Domain event bus.

Events reach two kinds of consumers:

1. In-process subscribers (``subscribe``), called concurrently; a failing
   handler is logged and never affects the others.
2. A Redis stream (``XADD`` with approximate ``maxlen``) for out-of-process
   consumers such as mailers or websocket gateways. Only used when a Redis
   client is supplied. Connection and timeout errors are retried a few
   times with a short backoff.

Publishing is fire-and-forget from the caller's point of view: the core
transaction has already committed, so delivery failures are logged and
swallowed.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tourney.tournament.events import DomainEvent, DomainEventType

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None]]

# Transient Redis errors are retried before the batch counts as failed
STREAM_MAX_ATTEMPTS = 3


@dataclass
class Subscription:
    subscription_id: str
    event_types: set[DomainEventType]
    handler: EventHandler
    tournament_id: str | None = None  # None = all tournaments
    is_active: bool = True


@dataclass
class EventMetrics:
    events_published: int = 0
    events_streamed: int = 0
    handler_failures: int = 0
    stream_failures: int = 0
    failed_event_ids: list[str] = field(default_factory=list)


class DomainEventBus:
    """Publishes committed domain events to local handlers and a Redis stream."""

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        stream_key: str = "tourney:events",
        stream_max_len: int = 10000,
    ):
        self.redis = redis_client
        self.stream_key = stream_key
        self.stream_max_len = stream_max_len
        self._subscriptions: dict[str, Subscription] = {}
        self._handlers_by_type: dict[DomainEventType, list[Subscription]] = defaultdict(list)
        self._metrics = EventMetrics()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        """Check the stream backend is reachable."""
        if self.redis is not None:
            await self.redis.ping()
        self._open = True

    async def close(self) -> None:
        self._open = False
        if self.redis is not None:
            await self.redis.aclose()

    def subscribe(
        self,
        event_types: Iterable[DomainEventType],
        handler: EventHandler,
        tournament_id: str | None = None,
    ) -> str:
        """Register an async handler. Returns the subscription id."""
        subscription = Subscription(
            subscription_id=str(uuid4()),
            event_types=set(event_types),
            handler=handler,
            tournament_id=tournament_id,
        )
        self._subscriptions[subscription.subscription_id] = subscription
        for event_type in subscription.event_types:
            self._handlers_by_type[event_type].append(subscription)
        return subscription.subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        subscription = self._subscriptions.pop(subscription_id, None)
        if not subscription:
            return False

        subscription.is_active = False
        for event_type in subscription.event_types:
            self._handlers_by_type[event_type] = [
                s for s in self._handlers_by_type[event_type]
                if s.subscription_id != subscription_id
            ]
        return True

    async def publish(self, event: DomainEvent) -> None:
        await self.publish_batch([event])

    async def publish_batch(self, events: list[DomainEvent]) -> None:
        """Stream and dispatch events in order. Never raises."""
        if not events:
            return

        await self._publish_to_stream(events)
        for event in events:
            await self._dispatch_local(event)
            self._metrics.events_published += 1

    def get_metrics(self) -> EventMetrics:
        return self._metrics

    async def _publish_to_stream(self, events: list[DomainEvent]) -> None:
        if self.redis is None:
            return

        try:
            await self._xadd_batch(events)
            self._metrics.events_streamed += len(events)
        except Exception as e:
            self._metrics.stream_failures += 1
            self._metrics.failed_event_ids.extend(event.event_id for event in events)
            logger.error(
                f"Failed to stream {len(events)} event(s) to {self.stream_key}: {e}"
            )

    @retry(
        stop=stop_after_attempt(STREAM_MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.05, max=0.5),
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        reraise=True,
    )
    async def _xadd_batch(self, events: list[DomainEvent]) -> None:
        async with self.redis.pipeline(transaction=False) as pipe:
            for event in events:
                pipe.xadd(
                    self.stream_key,
                    event.to_stream_fields(),
                    maxlen=self.stream_max_len,
                    approximate=True,
                )
            await pipe.execute()

    async def _dispatch_local(self, event: DomainEvent) -> None:
        tasks = []
        for subscription in self._handlers_by_type.get(event.event_type, []):
            if not subscription.is_active:
                continue
            if subscription.tournament_id and subscription.tournament_id != event.tournament_id:
                continue
            tasks.append(self._safe_handler_call(subscription.handler, event))

        if tasks:
            await asyncio.gather(*tasks)

    async def _safe_handler_call(self, handler: EventHandler, event: DomainEvent) -> None:
        try:
            await handler(event)
        except Exception as e:
            self._metrics.handler_failures += 1
            logger.warning(
                f"Event handler {getattr(handler, '__name__', handler)!r} failed "
                f"for {event.event_type.name} ({event.event_id}): {e}"
            )
