from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import httpx

from tarot_engine.core.settings import Settings

logger = logging.getLogger(__name__)


class AchievementSink(Protocol):
    async def reading_completed(self, user_id: str, reading_id: str, details: dict[str, Any]) -> None: ...


class LoggingAchievementSink:
    async def reading_completed(self, user_id: str, reading_id: str, details: dict[str, Any]) -> None:
        logger.info("achievements.reading_completed user_id=%s reading_id=%s", user_id, reading_id)


class HttpAchievementSink:
    """Posts completion events to an external achievements service."""

    def __init__(self, url: str, *, timeout_s: float = 5.0) -> None:
        self._url = url
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))

    async def reading_completed(self, user_id: str, reading_id: str, details: dict[str, Any]) -> None:
        response = await self._client.post(
            self._url,
            json={"event": "READING_COMPLETED", "user_id": user_id, "reading_id": reading_id, "details": details},
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


def build_achievement_sink(settings: Settings) -> AchievementSink:
    if settings.achievements_webhook_url:
        return HttpAchievementSink(settings.achievements_webhook_url, timeout_s=settings.achievements_timeout_s)
    return LoggingAchievementSink()


class AchievementNotifier:
    """Fire-and-forget wrapper: a failing sink never affects the reading."""

    def __init__(self, sink: AchievementSink | None) -> None:
        self._sink = sink
        self._tasks: set[asyncio.Task] = set()

    def notify_completed(self, user_id: str, reading_id: str, details: dict[str, Any] | None = None) -> None:
        if self._sink is None:
            return
        task = asyncio.create_task(self._deliver(user_id, reading_id, details or {}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, user_id: str, reading_id: str, details: dict[str, Any]) -> None:
        try:
            await self._sink.reading_completed(user_id, reading_id, details)
        except Exception:
            logger.exception("achievements.notify_failed user_id=%s reading_id=%s", user_id, reading_id)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        close = getattr(self._sink, "aclose", None)
        if close is not None:
            await close()
