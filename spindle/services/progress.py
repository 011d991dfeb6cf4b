"""
Progress events for long-running operations (binary acquisition, start).

Producers call a sink with ProgressEvent values. ProgressChannel is the
standard sink: a bounded queue the caller drains at its own pace.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Optional


class ProgressStage(str, Enum):
    """Stages reported by the binary manager and engine start"""
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    VERIFYING = "verifying"
    CACHED = "cached"
    STARTING = "starting"
    READY = "ready"


@dataclass(frozen=True)
class ProgressEvent:
    stage: ProgressStage
    message: str = ""

    def to_dict(self) -> dict:
        return {"stage": self.stage.value, "message": self.message}


ProgressSink = Callable[[ProgressEvent], None]


class ProgressChannel:
    """
    Bounded event stream of ProgressEvent values.

    Emitting never blocks the producer: when the buffer is full the oldest
    event is discarded.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 64):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self._closed = False
        self.dropped = 0

    def __call__(self, event: ProgressEvent) -> None:
        self.emit(event)

    def emit(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        if self._queue.qsize() >= self._maxsize:
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    def drain(self) -> list[ProgressEvent]:
        """Return every buffered event without waiting."""
        events = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is self._CLOSED:
                # keep the sentinel for any async iterator
                self._queue.put_nowait(item)
                break
            events.append(item)
        return events

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item


def report(progress: Optional[ProgressSink], stage: ProgressStage, message: str = "") -> None:
    """Send an event to an optional sink."""
    if progress is not None:
        progress(ProgressEvent(stage, message))
