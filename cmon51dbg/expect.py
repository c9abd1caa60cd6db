"""
Ordered response matching for the CMON51 line protocol.

The monitor has no request ids: a reply belongs to a command only by the
order in which it arrives.  Expectations are therefore served strictly
FIFO and only the head expectation ever looks at a line.
"""

from __future__ import annotations

import enum
import logging
import queue
import re
import threading
from collections import deque
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Deque, List, Match, Optional, Pattern, Sequence, Union

from .sanitize import DEFAULT_PROMPT, LineAssembler
from .transport import TransportError


logger = logging.getLogger(__name__)

PatternLike = Union[str, Pattern[str]]

LINE_END = re.compile(r"\r")


class ExpectTimeoutError(TransportError):
    """Raised when a reply does not arrive within the configured timeout."""


class ExpectKind(enum.Enum):
    SINGLE = "single"
    MULTI = "multi"


def _compile(pattern: PatternLike) -> Pattern[str]:
    return re.compile(pattern) if isinstance(pattern, str) else pattern


@dataclass
class Expectation:
    """One pending pattern.  SINGLE resolves to a match, MULTI to a list."""

    kind: ExpectKind
    pattern: Pattern[str]
    future: Future = field(default_factory=Future)
    matches: List[Match[str]] = field(default_factory=list)
    echo: Optional[str] = None
    lines_seen: int = 0

    @classmethod
    def single(cls, pattern: PatternLike) -> "Expectation":
        return cls(ExpectKind.SINGLE, _compile(pattern))

    @classmethod
    def until_prompt(cls, pattern: PatternLike) -> "Expectation":
        return cls(ExpectKind.MULTI, _compile(pattern))


class MatcherQueue:
    """Single-threaded matching algorithm; owns the queue and the backlog."""

    def __init__(self, prompt: Optional[PatternLike] = None) -> None:
        self.prompt = _compile(prompt) if prompt is not None else DEFAULT_PROMPT
        self.expectations: Deque[Expectation] = deque()
        self.backlog: Deque[str] = deque()

    def register(self, expectations: Sequence[Expectation]) -> None:
        self.expectations.extend(expectations)
        # Output that arrived before anyone asked for it goes first.
        while self.backlog and self.expectations:
            self._run_head(self.backlog.popleft())

    def feed_line(self, line: str) -> None:
        if not self.expectations:
            self.backlog.append(line)
            return
        self._run_head(line)

    def abort(self, exc: BaseException) -> int:
        """Fail every pending expectation; returns how many were pending."""
        pending = len(self.expectations)
        while self.expectations:
            expectation = self.expectations.popleft()
            if not expectation.future.done():
                expectation.future.set_exception(exc)
        self.backlog.clear()
        return pending

    def _run_head(self, line: str) -> bool:
        """Test *line* against the head expectation; True if it resolved."""
        head = self.expectations[0]
        first = head.lines_seen == 0
        head.lines_seen += 1
        if head.kind is ExpectKind.MULTI:
            if first and LINE_END.search(line):
                # The command echo; never part of the result.
                head.echo = line
                return False
            if self.prompt.search(line):
                self.expectations.popleft()
                logger.debug("multi expectation %s resolved with %d lines", head.pattern.pattern, len(head.matches))
                head.future.set_result(list(head.matches))
                return True
            match = head.pattern.search(line)
            if match:
                head.matches.append(match)
            return False
        match = head.pattern.search(line)
        if match is None:
            return False
        self.expectations.popleft()
        logger.debug("matched %r with %s", line, head.pattern.pattern)
        head.future.set_result(match)
        return True


_DATA = "data"
_REGISTER = "register"
_ABORT = "abort"
_STOP = "stop"


class ExpectEngine:
    """
    Feeds terminal output through a MatcherQueue on one consumer thread.

    Chunks, registrations and aborts share a bounded channel, so the queue
    and backlog are only ever touched by the consumer thread and always in
    the order the messages were posted.
    """

    def __init__(
        self,
        *,
        prompt: Optional[PatternLike] = None,
        channel_size: int = 1024,
        timeout: Optional[float] = None,
    ) -> None:
        self.matcher = MatcherQueue(prompt)
        self.assembler = LineAssembler(self.matcher.prompt)
        self.timeout = timeout
        self._channel: "queue.Queue[tuple[str, Any]]" = queue.Queue(maxsize=channel_size)
        self._thread: Optional[threading.Thread] = None
        # Guards _closed so nothing is posted after the stop message.
        self._post_lock = threading.Lock()
        self._closed = False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._closed = False
        self._thread = threading.Thread(target=self._run, name="cmon51-expect", daemon=True)
        self._thread.start()

    def close(self) -> None:
        with self._post_lock:
            if self._closed:
                return
            self._closed = True
            self._channel.put((_ABORT, TransportError("expect engine closed")))
            self._channel.put((_STOP, None))
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._thread = None

    def feed(self, chunk: str) -> None:
        """Queue a raw terminal chunk (any thread)."""
        self._post(_DATA, chunk)

    def abort(self, exc: BaseException) -> None:
        """Fail everything currently pending (any thread)."""
        self._post(_ABORT, exc)

    # ------------------------------------------------------------------
    # Awaiting replies
    # ------------------------------------------------------------------
    def expect(self, expectations: Sequence[Expectation]) -> List[Future]:
        if not self._post(_REGISTER, list(expectations)):
            raise TransportError("expect engine closed")
        return [expectation.future for expectation in expectations]

    def await_sequence(self, patterns: Sequence[PatternLike], timeout: Optional[float] = None) -> List[Match[str]]:
        """Wait for one line per pattern, in order."""
        futures = self.expect([Expectation.single(pattern) for pattern in patterns])
        return [self._wait(future, timeout) for future in futures]

    def await_until_prompt(self, pattern: PatternLike, timeout: Optional[float] = None) -> List[Match[str]]:
        """Collect every line matching *pattern* up to the next prompt."""
        (future,) = self.expect([Expectation.until_prompt(pattern)])
        return self._wait(future, timeout)

    def _post(self, kind: str, payload: Any) -> bool:
        with self._post_lock:
            if self._closed:
                return False
            self._channel.put((kind, payload))
            return True

    def _wait(self, future: Future, timeout: Optional[float]) -> Any:
        limit = timeout if timeout is not None else self.timeout
        try:
            return future.result(limit)
        except FutureTimeout as exc:
            raise ExpectTimeoutError(f"no reply within {limit}s") from exc

    # ------------------------------------------------------------------
    # Consumer thread
    # ------------------------------------------------------------------
    def _run(self) -> None:
        while True:
            kind, payload = self._channel.get()
            if kind == _STOP:
                break
            try:
                self._apply(kind, payload)
            except Exception:
                logger.exception("expect engine failed on %s message", kind)
        leftover = self.assembler.flush()
        if leftover or self.matcher.backlog:
            logger.debug("discarding %d unclaimed lines", len(leftover) + len(self.matcher.backlog))

    def _apply(self, kind: str, payload: Any) -> None:
        if kind == _DATA:
            for line in self.assembler.feed(payload):
                self.matcher.feed_line(line)
        elif kind == _REGISTER:
            self.matcher.register(payload)
        elif kind == _ABORT:
            pending = self.matcher.abort(payload)
            if pending:
                logger.warning("aborted %d pending expectations: %s", pending, payload)
