"""
Training progress channel.

Progress ticks are published from inside the training loop and must never
block it. The channel keeps a bounded buffer of recent events and hands
each one to subscribers in emission order on the next loop tick.

Overflow policy:
    - Progress ticks: oldest tick is dropped
    - Terminal events (completed, failed, cancelled): never dropped for a
      progress tick; only the newest max_terminal_events runs are kept
"""

import asyncio
import logging
import threading
from collections import deque
from typing import Callable, Deque, List, Optional

from talentml.schemas.ml import TrainingProgress

logger = logging.getLogger(__name__)

Subscriber = Callable[[TrainingProgress], None]


class TrainingEventChannel:
    def __init__(self, maxsize: int = 256, max_terminal_events: int = 10):
        if maxsize < 1:
            raise ValueError("Channel size must be at least 1")
        if max_terminal_events < 1:
            raise ValueError("At least one terminal event must be kept")
        self.maxsize = maxsize
        self.max_terminal_events = min(max_terminal_events, maxsize)
        self._events: Deque[TrainingProgress] = deque()
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        self.dropped = 0

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: TrainingProgress) -> None:
        with self._lock:
            self._events.append(event)
            self._trim()
            subscribers = list(self._subscribers)

        if not subscribers:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for callback in subscribers:
            if loop is not None:
                loop.call_soon(self._deliver, callback, event)
            else:
                self._deliver(callback, event)

    def _trim(self) -> None:
        terminal = [i for i, buffered in enumerate(self._events) if buffered.is_terminal]
        for i in reversed(terminal[:max(0, len(terminal) - self.max_terminal_events)]):
            del self._events[i]
            self.dropped += 1

        while len(self._events) > self.maxsize:
            for i, buffered in enumerate(self._events):
                if not buffered.is_terminal:
                    del self._events[i]
                    self.dropped += 1
                    break
            else:
                # Only terminal events left
                return

    @staticmethod
    def _deliver(callback: Subscriber, event: TrainingProgress) -> None:
        try:
            callback(event)
        except Exception as e:
            logger.warning(f"Training progress subscriber failed: {e}")

    def events(self) -> List[TrainingProgress]:
        """Buffered events, oldest first."""
        with self._lock:
            return list(self._events)

    def latest(self) -> Optional[TrainingProgress]:
        with self._lock:
            return self._events[-1] if self._events else None

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self.dropped = 0
