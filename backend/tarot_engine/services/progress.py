from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

PROGRESS_MILESTONES: dict[str, int] = {
    "validating": 20,
    "selecting_cards": 40,
    "analyzing": 60,
    "generating": 80,
    "finalizing": 95,
    "completed": 100,
}

PROGRESS_MESSAGES: dict[str, str] = {
    "validating": "Checking your question",
    "selecting_cards": "Drawing your cards",
    "analyzing": "Interpreting the cards for your question",
    "generating": "Writing your reading",
    "finalizing": "Finishing up",
    "completed": "Your reading is ready",
}


def format_sse(event: str, data: Any) -> str:
    payload = json.dumps(data, ensure_ascii=False, default=str)
    return f"event: {event}\ndata: {payload}\n\n"


@dataclass(frozen=True)
class ProgressEvent:
    step: str
    percent: int
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_step(cls, step: str, message: str | None = None, **details: Any) -> "ProgressEvent":
        return cls(
            step=step,
            percent=PROGRESS_MILESTONES[step],
            message=message or PROGRESS_MESSAGES[step],
            details=details,
        )

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        if not payload["details"]:
            payload.pop("details")
        return payload


class ProgressBroker:
    """In-process fan-out of progress events, keyed by reading id.

    Only the latest event per reading is retained for late subscribers; the
    database row stays the source of truth for terminal state.
    """

    def __init__(self, *, max_queue_size: int = 32) -> None:
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._latest: dict[str, ProgressEvent] = {}
        self._max_queue_size = max_queue_size

    def subscribe(self, reading_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers[reading_id].add(queue)
        latest = self._latest.get(reading_id)
        if latest is not None:
            queue.put_nowait(latest)
        return queue

    def unsubscribe(self, reading_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(reading_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            self._subscribers.pop(reading_id, None)

    def publish(self, reading_id: str, event: ProgressEvent) -> None:
        self._latest[reading_id] = event
        for queue in list(self._subscribers.get(reading_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("progress.queue_full reading_id=%s step=%s", reading_id, event.step)
        logger.debug("progress.published reading_id=%s step=%s percent=%s", reading_id, event.step, event.percent)

    def latest(self, reading_id: str) -> ProgressEvent | None:
        return self._latest.get(reading_id)

    def forget(self, reading_id: str) -> None:
        self._latest.pop(reading_id, None)
