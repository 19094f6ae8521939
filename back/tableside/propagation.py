"""
Change propagation.

Every committed session or order mutation is fanned out to two topics:
- session:{session_id} - guests sitting at that table
- venue:{venue_id}     - the staff console (all tables)

Local subscribers are called in-process. Events are also published to Redis
(channel "tableside:{topic}") where the ws-bridge picks them up for
WebSocket clients.

Delivery is at-least-once with best-effort ordering inside a topic and none
across topics. There is no replay log: a client that was disconnected must
re-fetch on reconnect. Handlers should use ChangeEvent.supersedes() to drop
stale events.
"""
import itertools
import json
import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

import redis
from sqlmodel import Field, SQLModel

from . import models
from .errors import TransportUnavailable
from .settings import settings

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "tableside"
RECONNECT_BACKOFF_SECONDS = 5.0


class ChangeKind(str, Enum):
    created = "created"
    updated = "updated"
    deleted = "deleted"


class EntityType(str, Enum):
    session = "session"
    order = "order"


def session_topic(session_id: str) -> str:
    return f"session:{session_id}"


def venue_topic(venue_id: int) -> str:
    return f"venue:{venue_id}"


def channel_for(topic: str) -> str:
    return f"{CHANNEL_PREFIX}:{topic}"


class ChangeEvent(SQLModel):
    topic: str
    kind: ChangeKind
    entity_type: EntityType
    entity_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=models.utcnow)

    def entity_timestamp(self) -> str:
        # ISO strings from the same source compare chronologically
        return str(self.payload.get("updated_at") or self.occurred_at.isoformat())

    def supersedes(self, other: "ChangeEvent | None") -> bool:
        """True if this event should replace `other` in a local cache."""
        if other is None:
            return True
        if (self.entity_type, self.entity_id) != (other.entity_type, other.entity_id):
            return True
        if other.kind == ChangeKind.deleted:
            return False
        if self.kind == ChangeKind.deleted:
            return True
        return self.entity_timestamp() >= other.entity_timestamp()

    def to_json(self) -> str:
        return self.model_dump_json()


Handler = Callable[[ChangeEvent], None]


class Subscription:
    """Handle returned by ChangePropagator.subscribe()."""

    def __init__(self, subscription_id: int, topic: str, handler: Handler):
        self.id = subscription_id
        self.topic = topic
        self.handler = handler
        self.active = True


class ChangePropagator:
    def __init__(
        self,
        redis_url: str | None = None,
        realtime_enabled: bool | None = None,
        redis_client: redis.Redis | None = None,
    ):
        self.redis_url = redis_url or settings.redis_url
        self.realtime_enabled = settings.realtime_enabled if realtime_enabled is None else realtime_enabled
        self._redis = redis_client
        self._retry_after = 0.0
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscriptions: dict[str, dict[int, Subscription]] = {}

    # ---- subscriptions ----

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        subscription = Subscription(next(self._ids), topic, handler)
        with self._lock:
            self._subscriptions.setdefault(topic, {})[subscription.id] = subscription
        logger.debug(f"Subscribed #{subscription.id} to {topic}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if not subscription.active:
                return
            subscription.active = False
            topic_subs = self._subscriptions.get(subscription.topic)
            if topic_subs is not None:
                topic_subs.pop(subscription.id, None)
                if not topic_subs:
                    del self._subscriptions[subscription.topic]
        logger.debug(f"Unsubscribed #{subscription.id} from {subscription.topic}")

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(topic, {}))

    # ---- publishing ----

    def publish(self, topic: str, event: ChangeEvent) -> None:
        """Deliver to local subscribers, then forward to Redis. Never raises."""
        with self._lock:
            targets = list(self._subscriptions.get(topic, {}).values())

        for subscription in targets:
            try:
                subscription.handler(event)
            except Exception as e:
                # Treated like a dead socket: drop it, the client re-fetches on reconnect
                logger.error(f"Subscriber #{subscription.id} on {topic} failed: {e}", exc_info=True)
                self.unsubscribe(subscription)

        try:
            self._forward(topic, event)
        except TransportUnavailable as e:
            logger.warning(f"Realtime transport unavailable, {topic} not forwarded: {e}")

    def _get_redis(self) -> redis.Redis | None:
        if not self.realtime_enabled:
            return None
        if self._redis is None:
            if time.monotonic() < self._retry_after:
                raise TransportUnavailable("Redis unreachable, waiting before reconnecting")
            try:
                client = redis.from_url(self.redis_url, socket_connect_timeout=1, socket_timeout=1)
                client.ping()
            except redis.RedisError as e:
                self._retry_after = time.monotonic() + RECONNECT_BACKOFF_SECONDS
                raise TransportUnavailable(str(e)) from e
            self._redis = client
        return self._redis

    def _forward(self, topic: str, event: ChangeEvent) -> None:
        client = self._get_redis()
        if client is None:
            return
        try:
            client.publish(channel_for(topic), event.to_json())
        except redis.RedisError as e:
            self._redis = None
            self._retry_after = time.monotonic() + RECONNECT_BACKOFF_SECONDS
            raise TransportUnavailable(str(e)) from e

    def publish_session_change(self, record: models.TableSession | dict[str, Any], kind: ChangeKind) -> None:
        if isinstance(record, models.TableSession):
            staff_payload = record.model_dump(mode="json", exclude={"active_table_node_id"})
        else:
            staff_payload = {k: v for k, v in record.items() if k != "active_table_node_id"}
        guest_payload = {k: v for k, v in staff_payload.items() if k != "verification_code"}
        session_id = staff_payload["id"]
        self.publish(
            session_topic(session_id),
            ChangeEvent(
                topic=session_topic(session_id),
                kind=kind,
                entity_type=EntityType.session,
                entity_id=session_id,
                payload=guest_payload,
            ),
        )
        self.publish(
            venue_topic(staff_payload["venue_id"]),
            ChangeEvent(
                topic=venue_topic(staff_payload["venue_id"]),
                kind=kind,
                entity_type=EntityType.session,
                entity_id=session_id,
                payload=staff_payload,
            ),
        )

    def publish_order_change(self, order: models.Order | dict[str, Any], kind: ChangeKind) -> None:
        if isinstance(order, models.Order):
            payload = json.loads(models.OrderRead.from_order(order).model_dump_json())
            payload["venue_id"] = order.venue_id
        else:
            payload = order
        for topic in (session_topic(payload["session_id"]), venue_topic(payload["venue_id"])):
            self.publish(
                topic,
                ChangeEvent(
                    topic=topic,
                    kind=kind,
                    entity_type=EntityType.order,
                    entity_id=str(payload["id"]),
                    payload=payload,
                ),
            )


propagator = ChangePropagator()


def get_propagator() -> ChangePropagator:
    return propagator
