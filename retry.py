"""
Retry/backlog subsystem for lazy sequences.

A RetryController pulls keys from a source sequence and runs a handler on
each one. Failed keys go into a backlog and are replayed once their backoff
delay has elapsed; the on_failure policy decides between retrying, failing
the whole sequence and skipping the step.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from lazy import (
    AttemptsExhaustedError,
    InfiniteSequenceError,
    PredicateError,
    ProductionError,
    Sequence,
)
from models import BacklogOrder, OnFailure, RetryPolicy, RetryStrategy

logger = logging.getLogger(__name__)

# Errors that are never subject to the failure policy.
_FATAL = (PredicateError, InfiniteSequenceError, AttemptsExhaustedError)


def wall_clock_ms() -> float:
    return time.time() * 1000.0


def sleep_ms(ms: float) -> None:
    time.sleep(ms / 1000.0)


@dataclass(eq=False)
class BacklogEntry:
    """A failed production attempt waiting to be replayed."""
    key: Any
    failed_at: float
    failed_count: int = 1
    args: Tuple[Any, ...] = ()
    last_error: Optional[BaseException] = None

    def record_failure(self, error: BaseException, now: float) -> None:
        self.failed_count += 1
        self.failed_at = now
        self.last_error = error


def retry_delay(entry: BacklogEntry, policy: RetryPolicy) -> float:
    """Milliseconds to wait after ``entry.failed_at`` before the entry may be retried."""
    interval = policy.retry_interval
    if policy.retry_strategy == RetryStrategy.LINEAR:
        return interval * entry.failed_count
    if policy.retry_strategy == RetryStrategy.EXPONENTIAL:
        # first retry waits one interval, then it doubles
        return interval * 2 ** (entry.failed_count - 1)
    return interval


def is_eligible(entry: BacklogEntry, policy: RetryPolicy, now: float) -> bool:
    if policy.backlog_order == BacklogOrder.IMMEDIATE:
        return True
    return now - entry.failed_at >= retry_delay(entry, policy)


class RetryController:
    """
    Drives a resilient sequence: ordinary production, backlog replay and
    failure reporting.

    has_more() does the production work ahead of next(), the same way
    filter() does, so a true answer always means an element is ready even
    when failing steps are skipped or retried. Inside next(*args) the
    handler receives those args; a bare has_next() call produces with none.
    Backlog entries always replay with the args of their first attempt.
    When the source is drained
    and only entries still inside their backoff window remain, the
    controller sleeps until the first of them becomes eligible.
    """

    def __init__(
        self,
        source: Sequence,
        handler: Callable[..., Any],
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = wall_clock_ms,
        sleep: Callable[[float], None] = sleep_ms,
        on_exhausted: Optional[Callable[[AttemptsExhaustedError], None]] = None,
    ):
        self.source = source
        self.handler = handler
        self.policy = policy or RetryPolicy()
        self.clock = clock
        self.sleep = sleep
        self.on_exhausted = on_exhausted
        self.backlog: Deque[BacklogEntry] = deque()
        self.exhausted: List[AttemptsExhaustedError] = []
        self.terminated = False
        self.stats: Dict[str, int] = {
            'produced': 0,
            'failed': 0,
            'retried': 0,
            'recovered': 0,
            'ignored': 0,
            'exhausted': 0,
        }
        self._pending = None

    def sequence(self) -> Sequence:
        """Build the Sequence driven by this controller."""
        return Sequence(
            producer=self.produce,
            has_more=self.has_more,
            finite=self.source.finite,
            signature=f"resilient.{self.source.signature}",
        )

    # --------- producer contract ----------
    def has_more(self, seq) -> bool:
        # seq.args carries the arguments of a next() call in progress
        if self._pending is None and not self.terminated:
            self._pending = self._advance(seq, seq.args)
        return self._pending is not None

    def produce(self, seq, *args):
        step, self._pending = self._pending, None
        if step is None:
            step = self._advance(seq, args)
        return step if step is not None else seq.emit_all(Sequence.empty())

    # --------- scheduling ----------
    def _advance(self, seq, args: Tuple[Any, ...] = ()):
        while not self.terminated:
            entry = self._eligible_head()
            if entry is not None:
                step = self._replay(seq, entry)
            elif self.source.has_next():
                step = self._attempt(seq, args)
            elif self.backlog:
                self._wait_for(self._head())
                continue
            else:
                return None
            if step is not None:
                return step
        return None

    def _head(self) -> BacklogEntry:
        if self.policy.backlog_order == BacklogOrder.FIFO:
            return self.backlog[0]
        return self.backlog[-1]

    def _pop_head(self) -> BacklogEntry:
        if self.policy.backlog_order == BacklogOrder.FIFO:
            return self.backlog.popleft()
        return self.backlog.pop()

    def _eligible_head(self) -> Optional[BacklogEntry]:
        if not self.backlog:
            return None
        head = self._head()
        if is_eligible(head, self.policy, self.clock()):
            return head
        return None

    def _wait_for(self, entry: BacklogEntry) -> None:
        remaining = retry_delay(entry, self.policy) - (self.clock() - entry.failed_at)
        if remaining > 0:
            logger.debug(f"Waiting {remaining:.0f}ms before retrying key {entry.key!r}")
            self.sleep(remaining)

    # --------- attempts ----------
    def _attempt(self, seq, args: Tuple[Any, ...]):
        try:
            key = self.source.next()
        except _FATAL:
            raise
        except Exception as e:
            return self._on_failure(None, args, e)
        try:
            step = self.handler(seq, key, *args)
        except _FATAL:
            raise
        except Exception as e:
            return self._on_failure(key, args, e)
        self.stats['produced'] += 1
        return step

    def _replay(self, seq, entry: BacklogEntry):
        self._pop_head()
        self.stats['retried'] += 1
        logger.info(
            f"Retrying key {entry.key!r} (attempt {entry.failed_count + 1}/{self.policy.max_attempts})"
        )
        try:
            step = self.handler(seq, entry.key, *entry.args)
        except _FATAL:
            raise
        except Exception as e:
            self.stats['failed'] += 1
            entry.record_failure(e, self.clock())
            self._backlog_or_exhaust(entry)
            return None
        self.stats['recovered'] += 1
        logger.info(f"Key {entry.key!r} recovered after {entry.failed_count} failures")
        return step

    def _on_failure(self, key: Any, args: Tuple[Any, ...], error: Exception):
        self.stats['failed'] += 1
        policy = self.policy.on_failure
        if policy == OnFailure.FAIL:
            self.terminated = True
            logger.error(f"Production failed for key {key!r}, terminating sequence: {error}")
            raise ProductionError(f"Production failed for key {key!r}: {error}", key=key) from error
        if policy == OnFailure.IGNORE:
            self.stats['ignored'] += 1
            logger.debug(f"Ignoring failed step for key {key!r}: {error}")
            return None
        if key is None:
            self.stats['ignored'] += 1
            logger.warning(f"Production failed without a retry key, dropping step: {error}")
            return None
        entry = BacklogEntry(key=key, failed_at=self.clock(), args=tuple(args), last_error=error)
        self._backlog_or_exhaust(entry)
        return None

    def _backlog_or_exhaust(self, entry: BacklogEntry) -> None:
        if entry.failed_count >= self.policy.max_attempts:
            self._report_exhausted(entry)
            return
        self.backlog.append(entry)
        logger.info(
            f"Backlogged key {entry.key!r} after {entry.failed_count} failure(s), "
            f"retry in {retry_delay(entry, self.policy):.0f}ms: {entry.last_error}"
        )

    def _report_exhausted(self, entry: BacklogEntry) -> None:
        error = AttemptsExhaustedError(entry)
        self.exhausted.append(error)
        self.stats['exhausted'] += 1
        logger.error(f"{error}. Last error: {entry.last_error}")
        if self.on_exhausted is not None:
            self.on_exhausted(error)
        if self.policy.raise_on_exhausted:
            raise error from entry.last_error


def resilient(
    source: Sequence,
    handler: Callable[..., Any],
    policy: Optional[RetryPolicy] = None,
    **kwargs,
) -> Sequence:
    """Shortcut for ``RetryController(source, handler, policy, ...).sequence()``."""
    return RetryController(source, handler, policy, **kwargs).sequence()
