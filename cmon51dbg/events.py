"""Observation channel: typed session events fanned out to subscribers."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional


logger = logging.getLogger(__name__)

EventHandler = Callable[["BaseEvent"], None]


@dataclass
class BaseEvent:
    type: str
    ts: float = field(default_factory=time.time)


@dataclass
class OutputEvent(BaseEvent):
    """Raw monitor output, forwarded before any parsing."""

    type: str = "output"
    text: str = ""


@dataclass
class StoppedEvent(BaseEvent):
    type: str = "stopped"
    reason: str = "breakpoint"
    line: int = -1
    pc: Optional[str] = None


@dataclass
class ExitedEvent(BaseEvent):
    type: str = "exited"
    exit_code: int = 0


@dataclass
class EventSubscription:
    """Bounded mailbox for one consumer; when full the oldest event goes."""

    categories: Optional[List[str]] = None
    queue_size: int = 256
    handler: EventHandler = lambda event: None
    drop_count: int = field(init=False, default=0)
    _pending: Deque[BaseEvent] = field(init=False, repr=False)
    _lock: threading.Lock = field(init=False, repr=False, default_factory=threading.Lock)

    def __post_init__(self) -> None:
        self._pending = deque(maxlen=max(self.queue_size, 1))

    def matches(self, event: BaseEvent) -> bool:
        return not self.categories or event.type in self.categories

    def push(self, event: BaseEvent) -> None:
        with self._lock:
            if len(self._pending) == self._pending.maxlen:
                self.drop_count += 1
                logger.debug("subscription full, dropped %s (%d total)", self._pending[0].type, self.drop_count)
            self._pending.append(event)

    def dispatch(self) -> int:
        """Run the handler over everything queued; returns the count."""
        with self._lock:
            events = list(self._pending)
            self._pending.clear()
        for event in events:
            try:
                self.handler(event)
            except Exception:
                logger.exception("event handler failed for %s", event.type)
        return len(events)


class EventBus:
    """
    Fan-out of session events.

    ``publish`` only enqueues, so it is safe from the PTY reader thread.
    Handlers run on whoever calls ``pump``: the caller in tests, or the
    dispatcher thread after ``start``, which wakes as soon as something is
    published.
    """

    def __init__(self) -> None:
        self._subs: Dict[int, EventSubscription] = {}
        self._tokens = itertools.count(1)
        self._wakeup = threading.Condition(threading.Lock())
        self._dirty = False
        self._running = False
        self._interval = 0.05
        self._worker: Optional[threading.Thread] = None

    def subscribe(self, sub: EventSubscription) -> int:
        with self._wakeup:
            token = next(self._tokens)
            self._subs[token] = sub
        return token

    def unsubscribe(self, token: int) -> None:
        with self._wakeup:
            self._subs.pop(token, None)

    def publish(self, event: BaseEvent) -> None:
        with self._wakeup:
            targets = [sub for sub in self._subs.values() if sub.matches(event)]
            if not targets:
                return
            for sub in targets:
                sub.push(event)
            self._dirty = True
            self._wakeup.notify_all()

    def pump(self) -> int:
        """Deliver queued events on every subscription."""
        with self._wakeup:
            subscriptions = list(self._subs.values())
            self._dirty = False
        return sum(sub.dispatch() for sub in subscriptions)

    def start(self, interval: float = 0.05) -> None:
        """Deliver events from a background thread until ``stop``."""
        with self._wakeup:
            self._interval = interval
            if self._worker and self._worker.is_alive():
                return
            self._running = True
        self._worker = threading.Thread(target=self._run, name="cmon51-events", daemon=True)
        self._worker.start()

    def stop(self) -> None:
        with self._wakeup:
            self._running = False
            self._wakeup.notify_all()
        worker = self._worker
        if worker and worker.is_alive() and worker is not threading.current_thread():
            worker.join(timeout=0.5)
        self._worker = None

    def _run(self) -> None:
        while True:
            with self._wakeup:
                if self._running and not self._dirty:
                    self._wakeup.wait(self._interval)
                running = self._running
            self.pump()
            if not running:
                break
