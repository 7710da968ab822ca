from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Set

from concord_governance.consensus import ConsensusEngine, PendingEscalation
from concord_governance.types import ConsensusOutcome

from .models import (
    CHANNEL_ESCALATION_EXPIRED,
    CHANNEL_ESCALATION_OPENED,
    CHANNEL_ESCALATION_RESOLVED,
    EscalationView,
    OutcomeResponse,
    StreamEnvelope,
    model_to_dict,
)

logger = logging.getLogger(__name__)


class ReviewBroadcaster:
    """Async fanout of escalation traffic to review-channel subscribers.

    Also owns the expiry sweep: escalations whose review window closed are
    rejected on a timer and announced like any other verdict.
    """

    def __init__(
        self,
        *,
        engine: ConsensusEngine,
        expiry_poll_interval: float = 30.0,
        on_change: Optional[Callable[[], None]] = None,
        ingress_queue_size: int = 1024,
        subscriber_queue_size: int = 256,
    ) -> None:
        self._engine = engine
        self._expiry_poll_interval = max(0.1, float(expiry_poll_interval))
        self._on_change = on_change
        self._subscriber_queue_size = max(8, int(subscriber_queue_size))
        self._ingress_queue: "asyncio.Queue[StreamEnvelope]" = asyncio.Queue(maxsize=max(16, int(ingress_queue_size)))
        self._subscribers: Set["asyncio.Queue[StreamEnvelope]"] = set()
        self._tasks: list[asyncio.Task[Any]] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self._loop = asyncio.get_running_loop()
        self._engine.add_escalation_hook(self._on_escalation)
        self._tasks = [
            asyncio.create_task(self._fanout_loop(), name="review-fanout"),
            asyncio.create_task(self._expiry_loop(), name="review-expiry"),
        ]

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        self._engine.remove_escalation_hook(self._on_escalation)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._subscribers.clear()

    def subscribe(self) -> "asyncio.Queue[StreamEnvelope]":
        queue: "asyncio.Queue[StreamEnvelope]" = asyncio.Queue(maxsize=self._subscriber_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[StreamEnvelope]") -> None:
        self._subscribers.discard(queue)

    def publish_resolution(self, outcome: ConsensusOutcome, *, channel: str = CHANNEL_ESCALATION_RESOLVED) -> None:
        envelope = StreamEnvelope.build(channel=channel, data=model_to_dict(OutcomeResponse.from_outcome(outcome)))
        self._enqueue_ingress(envelope)

    def sweep_expired(self) -> list[ConsensusOutcome]:
        expired = self._engine.expire_escalations()
        for outcome in expired:
            self.publish_resolution(outcome, channel=CHANNEL_ESCALATION_EXPIRED)
        if expired and self._on_change is not None:
            self._on_change()
        return expired

    def _on_escalation(self, pending: PendingEscalation) -> None:
        envelope = StreamEnvelope.build(
            channel=CHANNEL_ESCALATION_OPENED,
            data=model_to_dict(EscalationView.from_pending(pending)),
        )
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._enqueue_ingress(envelope)
        else:
            loop.call_soon_threadsafe(self._enqueue_ingress, envelope)

    async def _fanout_loop(self) -> None:
        while self._running:
            envelope = await self._ingress_queue.get()
            for subscriber in list(self._subscribers):
                self._enqueue_subscriber(subscriber, envelope)

    async def _expiry_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._expiry_poll_interval)
            try:
                self.sweep_expired()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("escalation expiry sweep failed")

    def _enqueue_ingress(self, envelope: StreamEnvelope) -> None:
        if self._ingress_queue.full():
            try:
                self._ingress_queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        try:
            self._ingress_queue.put_nowait(envelope)
        except asyncio.QueueFull:
            logger.warning("review ingress queue full; dropped %s envelope", envelope.channel)

    @staticmethod
    def _enqueue_subscriber(queue: "asyncio.Queue[StreamEnvelope]", envelope: StreamEnvelope) -> None:
        if queue.full():
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        try:
            queue.put_nowait(envelope)
        except asyncio.QueueFull:
            pass

