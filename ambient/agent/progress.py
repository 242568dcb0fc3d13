"""
Progress reporting for pipeline runs.

A ProgressStream collects (stage, processed, total) events for one session.
Per stage, `processed` never goes backwards: an emit that would lower it is
dropped. Emits may come from concurrent tasks or threads.

Subscribers are called with every accepted event. A failing subscriber is
logged and never affects the pipeline.

Usage:
    from ambient.agent.progress import ProgressStream

    progress = ProgressStream("session-1")
    unsubscribe = progress.subscribe(lambda event: print(event.stage, event.processed))
    report = progress.reporter(Stage.FETCH)
    report(10, 45)
    unsubscribe()

ProgressStreams keeps the latest stream of each session, up to a fixed
number of sessions.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel, Field

from ambient.agent.schemas import Stage, utc_now

logger = logging.getLogger(__name__)


class ProgressEvent(BaseModel):
    """One progress observation for one stage of one session."""
    session_id: str
    stage: Stage
    processed: int = Field(ge=0)
    total: int = Field(ge=0)
    timestamp: datetime = Field(default_factory=utc_now)


Subscriber = Callable[[ProgressEvent], None]


class ProgressStream:
    """Append-only, per-stage monotonic progress log for one session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._lock = threading.Lock()
        self._events: list[ProgressEvent] = []
        self._latest: dict[Stage, ProgressEvent] = {}
        self._subscribers: list[Subscriber] = []
        self.finished = False

    def emit(self, stage: Stage, processed: int, total: int) -> Optional[ProgressEvent]:
        """
        Record progress for a stage.

        Returns the recorded event, or None when the emit was dropped because
        it would move the stage's counter backwards.
        """
        with self._lock:
            last = self._latest.get(stage)
            if last is not None and processed < last.processed:
                logger.debug(
                    "progress.out_of_order",
                    extra={
                        "action": "progress.out_of_order",
                        "stage": stage.value,
                        "processed": processed,
                        "last_processed": last.processed,
                    },
                )
                return None

            event = ProgressEvent(
                session_id=self.session_id,
                stage=stage,
                processed=processed,
                total=total,
            )
            self._events.append(event)
            self._latest[stage] = event
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "progress.subscriber_failed",
                    extra={"action": "progress.subscriber_failed", "stage": stage.value},
                )
        return event

    def reporter(self, stage: Stage) -> Callable[[int, int], None]:
        """A (processed, total) callback bound to one stage."""

        def report(processed: int, total: int) -> None:
            self.emit(stage, processed, total)

        return report

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber. Returns a function that removes it again."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def events(self) -> list[ProgressEvent]:
        with self._lock:
            return list(self._events)

    def latest(self, stage: Stage) -> Optional[ProgressEvent]:
        with self._lock:
            return self._latest.get(stage)

    def close(self) -> None:
        """Mark the run as over. Closed streams are evicted first."""
        self.finished = True

    def snapshot(self) -> dict[str, dict]:
        """Latest processed/total per stage, keyed by stage name."""
        with self._lock:
            return {
                stage.value: {"processed": event.processed, "total": event.total}
                for stage, event in self._latest.items()
            }


class ProgressStreams:
    """
    Latest ProgressStream per session, bounded to `max_sessions`.

    When full, the oldest finished stream is evicted; if every stream is
    still running, the oldest one goes.
    """

    def __init__(self, max_sessions: int = 100):
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self._max = max_sessions
        self._lock = threading.Lock()
        self._streams: dict[str, ProgressStream] = {}

    def start(self, session_id: str) -> ProgressStream:
        """A fresh stream for a new run, replacing the session's previous one."""
        stream = ProgressStream(session_id)
        with self._lock:
            self._streams.pop(session_id, None)
            while len(self._streams) >= self._max:
                self._evict()
            self._streams[session_id] = stream
        return stream

    def get(self, session_id: str) -> Optional[ProgressStream]:
        with self._lock:
            return self._streams.get(session_id)

    def pop(self, session_id: str) -> Optional[ProgressStream]:
        with self._lock:
            return self._streams.pop(session_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._streams)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._streams

    def _evict(self) -> None:
        victim = next(
            (sid for sid, stream in self._streams.items() if stream.finished),
            next(iter(self._streams)),
        )
        del self._streams[victim]
        logger.debug(
            "progress.evicted",
            extra={"action": "progress.evicted", "evicted_session": victim},
        )
