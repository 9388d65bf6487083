"""Progress events pushed by the orchestrator to queues and listeners."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from loguru import logger

from .models.session import GenerationPhase, SessionStatus


class EventKind(str, Enum):
    SESSION_STARTED = "session_started"
    PHASE_CHANGED = "phase_changed"
    CHAPTER_STARTED = "chapter_started"
    CHAPTER_COMPLETED = "chapter_completed"
    CHAPTER_FAILED = "chapter_failed"
    USAGE = "usage"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_CANCELLED = "session_cancelled"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"


@dataclass(frozen=True)
class ProgressEvent:
    session_id: str
    kind: EventKind
    phase: GenerationPhase
    status: SessionStatus
    operation: str = ""
    overall_percentage: float = 0.0
    phase_percentage: float = 0.0
    current_chapter: Optional[int] = None
    total_chapters: int = 0
    words_generated: int = 0
    target_words: int = 0
    cost_so_far: float = 0.0
    elapsed: float = 0.0
    estimated_remaining: Optional[float] = None
    average_quality: Optional[float] = None
    issues_found: int = 0
    issues_auto_fixed: int = 0


ProgressListener = Callable[[ProgressEvent], None]


class EventChannel:
    """Fan-out of progress events; the publisher never waits on consumers."""

    def __init__(self):
        self._queues: list[asyncio.Queue] = []
        self._listeners: list[ProgressListener] = []

    def subscribe(self, maxsize: int = 0) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def add_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: ProgressEvent) -> None:
        for queue in self._queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(f"Dropping {event.kind.value} event for a full subscriber queue")
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Progress listener failed: {e}")
