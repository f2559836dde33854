"""
Lifecycle Event Broadcaster

Fans out chunk and processing lifecycle events to every observer
subscribed to a session's channel.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable
from uuid import UUID

import structlog

from casecoach.core.models import CoachModel, ProcessedResult
from .protocol import (
    ChunkReceivedPayload,
    MediaKind,
    ProcessingErrorPayload,
    ProcessingStartedPayload,
    QuestionProcessedPayload,
    RealtimeEvent,
    RealtimeEventType,
)

logger = structlog.get_logger()

SendCallback = Callable[[RealtimeEvent], Awaitable[None]]


@dataclass
class EventSubscription:
    """Represents one observer's subscription to a session channel."""

    subscriber_id: UUID
    session_id: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_update: datetime | None = None
    events_received: int = 0


@dataclass
class EventChannel:
    """A per-session channel; events on it are delivered in publish order."""

    session_id: str

    # State
    sequence: int = 0
    last_publish: datetime | None = None

    # Subscribers
    subscribers: dict[UUID, EventSubscription] = field(default_factory=dict)

    # Serializes delivery so every subscriber sees the same order
    delivery_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class EventBroadcaster:
    """
    Session-scoped publish/subscribe for realtime lifecycle events.

    Delivery is best-effort: a failing subscriber is logged and skipped.
    Within one session, events reach each subscriber in the order they
    were published.
    """

    def __init__(self) -> None:
        # Channels by session_id
        self._channels: dict[str, EventChannel] = {}

        # Index: subscriber_id -> subscribed session_ids
        self._subscriber_sessions: dict[UUID, set[str]] = defaultdict(set)

        # Callback registry for sending events
        self._send_callbacks: dict[UUID, SendCallback] = {}

        self._lock = asyncio.Lock()

        logger.info("EventBroadcaster initialized")

    def _get_or_create_channel(self, session_id: str) -> EventChannel:
        channel = self._channels.get(session_id)
        if channel is None:
            channel = EventChannel(session_id=session_id)
            self._channels[session_id] = channel
        return channel

    # ──────────────────────────────────────────────────────────
    # Subscription management
    # ──────────────────────────────────────────────────────────

    def register_send_callback(
        self,
        subscriber_id: UUID,
        callback: SendCallback,
    ) -> None:
        """Register a callback for sending events to a subscriber."""
        self._send_callbacks[subscriber_id] = callback

    def unregister_send_callback(self, subscriber_id: UUID) -> None:
        """Unregister a subscriber's send callback."""
        self._send_callbacks.pop(subscriber_id, None)

    async def subscribe(
        self,
        subscriber_id: UUID,
        session_id: str,
        callback: SendCallback | None = None,
    ) -> EventSubscription:
        """Subscribe an observer to a session channel."""
        if callback is not None:
            self.register_send_callback(subscriber_id, callback)

        async with self._lock:
            channel = self._get_or_create_channel(session_id)
            subscription = EventSubscription(
                subscriber_id=subscriber_id,
                session_id=session_id,
            )
            channel.subscribers[subscriber_id] = subscription
            self._subscriber_sessions[subscriber_id].add(session_id)

        logger.info(
            "Event subscription created",
            subscriber_id=str(subscriber_id),
            session_id=session_id,
        )
        return subscription

    async def unsubscribe(self, subscriber_id: UUID, session_id: str) -> None:
        """Remove an observer from a session channel."""
        async with self._lock:
            channel = self._channels.get(session_id)
            if channel:
                channel.subscribers.pop(subscriber_id, None)
                if not channel.subscribers:
                    self._channels.pop(session_id, None)

            sessions = self._subscriber_sessions.get(subscriber_id)
            if sessions is not None:
                sessions.discard(session_id)
                if not sessions:
                    self._subscriber_sessions.pop(subscriber_id, None)

        logger.debug(
            "Event subscription removed",
            subscriber_id=str(subscriber_id),
            session_id=session_id,
        )

    async def unsubscribe_all(self, subscriber_id: UUID) -> None:
        """Remove an observer from every channel it joined."""
        for session_id in list(self._subscriber_sessions.get(subscriber_id, set())):
            await self.unsubscribe(subscriber_id, session_id)
        self.unregister_send_callback(subscriber_id)

    def subscriber_count(self, session_id: str) -> int:
        channel = self._channels.get(session_id)
        return len(channel.subscribers) if channel else 0

    # ──────────────────────────────────────────────────────────
    # Publishing
    # ──────────────────────────────────────────────────────────

    async def publish(
        self,
        session_id: str,
        event_type: RealtimeEventType,
        payload: CoachModel | dict[str, Any],
    ) -> int:
        """
        Publish an event to every subscriber of a session.

        Args:
            session_id: Channel to publish on
            event_type: Lifecycle event name
            payload: Event body; models are serialized with camelCase keys

        Returns:
            Number of subscribers notified
        """
        body = payload.to_wire() if isinstance(payload, CoachModel) else payload

        channel = self._channels.get(session_id)
        if channel is None:
            logger.debug(
                "No subscribers for event",
                session_id=session_id,
                event_type=event_type.value,
            )
            return 0

        async with channel.delivery_lock:
            event = RealtimeEvent(
                type=event_type,
                session_id=session_id,
                sequence=channel.sequence,
                payload=body,
            )
            channel.sequence += 1
            channel.last_publish = datetime.utcnow()

            notified = 0
            for subscriber_id, subscription in list(channel.subscribers.items()):
                callback = self._send_callbacks.get(subscriber_id)
                if callback is None:
                    continue
                try:
                    await callback(event)
                    subscription.last_update = datetime.utcnow()
                    subscription.events_received += 1
                    notified += 1
                except Exception as e:
                    logger.error(
                        "Failed to deliver event to subscriber",
                        subscriber_id=str(subscriber_id),
                        session_id=session_id,
                        event_type=event_type.value,
                        error=str(e),
                    )

        return notified

    async def chunk_received(
        self,
        session_id: str,
        question_index: int,
        chunk_index: int,
        kinds: list[MediaKind],
        timestamp: float,
    ) -> int:
        return await self.publish(
            session_id,
            RealtimeEventType.CHUNK_RECEIVED,
            ChunkReceivedPayload(
                session_id=session_id,
                question_index=question_index,
                chunk_index=chunk_index,
                kinds=kinds,
                timestamp=timestamp,
            ),
        )

    async def processing_started(self, session_id: str, question_index: int) -> int:
        return await self.publish(
            session_id,
            RealtimeEventType.PROCESSING_STARTED,
            ProcessingStartedPayload(
                session_id=session_id,
                question_index=question_index,
            ),
        )

    async def question_processed(
        self,
        session_id: str,
        question_index: int,
        result: ProcessedResult,
    ) -> int:
        return await self.publish(
            session_id,
            RealtimeEventType.QUESTION_PROCESSED,
            QuestionProcessedPayload(
                session_id=session_id,
                question_index=question_index,
                result=result,
            ),
        )

    async def processing_error(
        self,
        session_id: str,
        question_index: int,
        error: str,
    ) -> int:
        return await self.publish(
            session_id,
            RealtimeEventType.PROCESSING_ERROR,
            ProcessingErrorPayload(
                session_id=session_id,
                question_index=question_index,
                error=error,
            ),
        )

    def get_stats(self) -> dict[str, Any]:
        """Get broadcaster statistics."""
        return {
            "active_channels": len(self._channels),
            "total_subscribers": sum(
                len(ch.subscribers) for ch in self._channels.values()
            ),
            "total_events": sum(ch.sequence for ch in self._channels.values()),
        }
