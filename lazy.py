"""
Lazy, single-pass sequences driven by a has-next/next protocol.

A Sequence wraps two callables: a cheap ``has_more(seq)`` predicate and a
``producer(seq, *args)`` that computes the next step. A step is either a raw
element or a nested Sequence; nested sequences are kept as the buffer and
drained one element per ``next()`` call before the producer runs again, so
a producer can hand out a whole page of results in one go.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Marks an empty slot in producer state (elements themselves may be None).
_NOTHING = object()


class SequenceError(Exception):
    """Base class for errors raised by the sequence engine."""
    pass


class PredicateError(SequenceError):
    """Raised when the has-more check itself fails. Never retried."""
    pass


class ProductionError(SequenceError):
    """Raised when producing the next element fails."""

    def __init__(self, message: str, key: Any = None):
        super().__init__(message)
        self.key = key


class InfiniteSequenceError(SequenceError):
    """Raised when an operation that needs full materialization meets an infinite sequence."""
    pass


class AttemptsExhaustedError(SequenceError):
    """Raised (or reported) when a backlog entry runs out of retry attempts."""

    def __init__(self, entry):
        super().__init__(
            f"Retry attempts exhausted for key {entry.key!r} after {entry.failed_count} failures"
        )
        self.entry = entry


@dataclass(frozen=True)
class Raw:
    """A produced element, delivered as-is."""
    value: Any


@dataclass(frozen=True)
class Nested:
    """A produced sub-sequence, drained lazily into the parent stream."""
    sequence: "Sequence"


def _nothing_more(seq) -> bool:
    return False


def _produce_nothing(seq, *args):
    return seq.emit(None)


class Sequence:
    """
    A lazily evaluated, single-pass, single-consumer stream of elements.

    ``finite`` must be set for to_list(), resolve() and reduce() to work.
    ``no_wrap`` makes emit() hand values back untouched instead of wrapping
    them into a singular sequence.
    """

    def __init__(
        self,
        producer: Optional[Callable[..., Any]] = None,
        has_more: Optional[Callable[["Sequence"], bool]] = None,
        finite: bool = False,
        no_wrap: bool = False,
        signature: str = "",
    ):
        self._producer = producer or _produce_nothing
        self._has_more = has_more or _nothing_more
        self.finite = finite
        self.no_wrap = no_wrap
        self.signature = signature
        # arguments of the next() call in progress, () between calls
        self.args: Tuple[Any, ...] = ()
        self._buffer: Optional["Sequence"] = None

    # --------- core protocol ----------
    def has_next(self) -> bool:
        """True if the buffer still has elements or the predicate says more are coming."""
        if self._buffer is not None and self._buffer.has_next():
            return True
        try:
            return bool(self._has_more(self))
        except SequenceError:
            raise
        except Exception as e:
            raise PredicateError(f"Problem calling has_more() on {self!r}: {e}") from e

    def next(self, *args) -> Any:
        """
        Return the next element.

        Elements left in the buffer are served first. Otherwise the producer
        is invoked with ``args``; a nested result replaces the buffer and is
        drained from there. Returns None once the sequence is exhausted.

        While the call runs, ``args`` are also available as ``seq.args`` so a
        predicate that does production work ahead of time can use them.
        """
        self.args = args
        try:
            while True:
                if self._buffer is not None and self._buffer.has_next():
                    return self._buffer.next()
                if not self.has_next():
                    return None
                step = self._produce(*args)
                if isinstance(step, Nested):
                    self._buffer = step.sequence
                    continue
                if isinstance(step, Raw):
                    self._buffer = None
                    return step.value
                raise ProductionError(
                    f"Producer of {self!r} returned {type(step).__name__}; "
                    f"use emit() or emit_all() to return a step"
                )
        finally:
            self.args = ()

    def emit(self, value: Any):
        """Build the step for a single produced value."""
        if self.no_wrap:
            return Raw(value)
        return Nested(Sequence.singular(value))

    def emit_all(self, sequence: "Sequence"):
        """Build the step for a produced sub-sequence."""
        if self.no_wrap:
            return Raw(sequence)
        return Nested(sequence)

    def _produce(self, *args):
        try:
            return self._producer(self, *args)
        except SequenceError:
            raise
        except Exception as e:
            raise ProductionError(f"Problem producing next element of {self!r}: {e}") from e

    # --------- forcing evaluation ----------
    def to_list(self) -> List[Any]:
        self._require_finite("to_list")
        acc = []
        while self.has_next():
            acc.append(self.next())
        return acc

    def resolve(self) -> None:
        """Drain the sequence for its side effects."""
        self._require_finite("resolve")
        while self.has_next():
            self.next()

    def take(self, n: int) -> List[Any]:
        """Return at most ``n`` elements. Safe on infinite sequences."""
        acc = []
        while len(acc) < n and self.has_next():
            acc.append(self.next())
        return acc

    def reduce(self, initial: Any, fn: Callable[["Sequence", Any, Any], Any]) -> Any:
        self._require_finite("reduce")
        acc = initial
        while self.has_next():
            acc = fn(self, acc, self.next())
        return acc

    # --------- chainable operators (lazy) ----------
    def map(self, fn: Callable[["Sequence", Any], Any]) -> "Sequence":
        """Apply ``fn(upstream, element)`` to every element."""
        upstream = self

        def produce(seq, *args):
            return seq.emit(fn(upstream, upstream.next()))

        return Sequence(
            producer=produce,
            has_more=lambda seq: upstream.has_next(),
            finite=self.finite,
            no_wrap=self.no_wrap,
            signature=f"map.{self.signature}",
        )

    def filter(self, predicate: Callable[[Any], bool], max_lookahead: int = 0) -> "Sequence":
        """
        Keep elements accepted by ``predicate``.

        has_next() does the work here: it pulls from upstream until a match
        is found and caches it for next(). On an infinite upstream,
        ``max_lookahead`` bounds the number of consecutive rejected pulls
        before the filtered sequence gives up and reports exhaustion.
        """
        window = _Lookahead(
            upstream=self,
            predicate=predicate,
            max_lookahead=0 if self.finite else max_lookahead,
            stop_on_reject=False,
        )
        return Sequence(
            producer=window.produce,
            has_more=window.has_more,
            finite=self.finite,
            no_wrap=self.no_wrap,
            signature=f"filter.{self.signature}",
        )

    def take_while(self, predicate: Callable[[Any], bool], max_lookahead: int = 0) -> "Sequence":
        """Pass elements through until ``predicate`` rejects one; the sequence ends there."""
        window = _Lookahead(
            upstream=self,
            predicate=predicate,
            max_lookahead=0 if self.finite else max_lookahead,
            stop_on_reject=True,
        )
        return Sequence(
            producer=window.produce,
            has_more=window.has_more,
            finite=self.finite,
            no_wrap=self.no_wrap,
            signature=f"take_while.{self.signature}",
        )

    def extend(
        self,
        new_producer: Callable[["Sequence", Any], Any],
        has_more: Optional[Callable[["Sequence"], bool]] = None,
        finite: Optional[bool] = None,
        no_wrap: Optional[bool] = None,
        signature: str = "",
    ) -> "Sequence":
        """
        Continue this sequence with another producer step.

        ``new_producer(seq, element)`` receives the next upstream element
        already resolved and returns a step built with emit()/emit_all().
        Anything not overridden is inherited from this sequence.
        """
        upstream = self

        def produce(seq, *args):
            return new_producer(seq, upstream.next())

        return Sequence(
            producer=produce,
            has_more=has_more or (lambda seq: upstream.has_next()),
            finite=self.finite if finite is None else finite,
            no_wrap=self.no_wrap if no_wrap is None else no_wrap,
            signature=f"extend.{signature or self.signature}",
        )

    def merge_with(self, *others: "Sequence") -> "Sequence":
        return Sequence.merge(self, *others)

    def with_retry(self, handler, policy=None, **kwargs) -> "Sequence":
        """Treat this sequence as retry keys and run ``handler`` on each under a RetryPolicy."""
        from retry import RetryController
        return RetryController(self, handler, policy, **kwargs).sequence()

    # --------- iterator protocol ----------
    def __iter__(self) -> Iterator[Any]:
        while self.has_next():
            yield self.next()

    def __repr__(self):
        kind = "finite" if self.finite else "infinite"
        buffered = self._buffer is not None and self._buffer.has_next()
        return f"<Sequence {self.signature or 'anonymous'} {kind} buffered={buffered}>"

    # --------- helpers ----------
    def _require_finite(self, operation: str) -> None:
        if not self.finite:
            raise InfiniteSequenceError(
                f"{operation}() needs a finite sequence, {self!r} is infinite. "
                f"Construct it with finite=True or bound it with take()"
            )

    # --------- constructors ----------
    @classmethod
    def empty(cls) -> "Sequence":
        return cls(finite=True, no_wrap=True, signature="empty")

    @classmethod
    def singular(cls, value: Any) -> "Sequence":
        once = _Once(value)
        return cls(
            producer=once.produce,
            has_more=once.has_more,
            finite=True,
            no_wrap=True,
            signature="singular",
        )

    @classmethod
    def from_list(cls, items: Iterable[Any]) -> "Sequence":
        """A finite sequence over a fixed collection (copied at construction)."""
        cursor = _ListCursor(list(items))
        return cls(
            producer=cursor.produce,
            has_more=cursor.has_more,
            finite=True,
            no_wrap=True,
            signature="list",
        )

    @classmethod
    def from_iterable(cls, iterable: Iterable[Any], finite: bool = False) -> "Sequence":
        """
        Adapt a Python iterable. has_next() pulls one element ahead from the
        iterator, so iterator errors surface as PredicateError.
        """
        cursor = _IteratorCursor(iter(iterable))
        return cls(
            producer=cursor.produce,
            has_more=cursor.has_more,
            finite=finite,
            no_wrap=True,
            signature="iterable",
        )

    @classmethod
    def infinity(cls) -> "Sequence":
        """An endless sequence of None, useful as a base for extend()."""
        return cls(
            producer=_produce_nothing,
            has_more=lambda seq: True,
            finite=False,
            no_wrap=True,
            signature="infinity",
        )

    @classmethod
    def cycle(cls, items: Iterable[Any]) -> "Sequence":
        """Repeat a fixed collection forever. An empty collection gives an empty sequence."""
        cursor = _CycleCursor(list(items))
        if not cursor.items:
            return cls.empty()
        return cls(
            producer=cursor.produce,
            has_more=lambda seq: True,
            finite=False,
            no_wrap=True,
            signature="cycle",
        )

    @classmethod
    def merge(cls, *sequences: "Sequence") -> "Sequence":
        """Round-robin over the inputs, skipping exhausted ones. Finite iff all inputs are."""
        robin = _RoundRobin(list(sequences))
        return cls(
            producer=robin.produce,
            has_more=robin.has_more,
            finite=all(s.finite for s in sequences),
            no_wrap=True,
            signature="merge",
        )


# ---------- producer state ----------

@dataclass
class _Once:
    value: Any
    resolved: bool = False

    def has_more(self, seq) -> bool:
        return not self.resolved

    def produce(self, seq, *args):
        self.resolved = True
        return seq.emit(self.value)


@dataclass
class _ListCursor:
    items: List[Any]
    index: int = 0

    def has_more(self, seq) -> bool:
        return self.index < len(self.items)

    def produce(self, seq, *args):
        value = self.items[self.index]
        self.index += 1
        return seq.emit(value)


@dataclass
class _CycleCursor:
    items: List[Any]
    index: int = 0

    def produce(self, seq, *args):
        value = self.items[self.index % len(self.items)]
        self.index += 1
        return seq.emit(value)


@dataclass
class _IteratorCursor:
    iterator: Iterator[Any]
    pending: Any = _NOTHING
    done: bool = False

    def has_more(self, seq) -> bool:
        if self.pending is _NOTHING and not self.done:
            try:
                self.pending = next(self.iterator)
            except StopIteration:
                self.done = True
        return self.pending is not _NOTHING

    def produce(self, seq, *args):
        value, self.pending = self.pending, _NOTHING
        return seq.emit(value)


@dataclass
class _Lookahead:
    """
    Accept-window state for filter() and take_while().

    A matched candidate stays cached until next() consumes it, so repeated
    has_next() calls never rescan. Once the window ends (upstream exhausted,
    a take_while rejection or the lookahead cutoff) it stays ended.
    """
    upstream: Sequence
    predicate: Callable[[Any], bool]
    max_lookahead: int
    stop_on_reject: bool
    value: Any = _NOTHING
    ended: bool = False

    def has_more(self, seq) -> bool:
        if self.value is not _NOTHING:
            return True
        if self.ended:
            return False
        misses = 0
        while self.upstream.has_next():
            candidate = self.upstream.next()
            if self.predicate(candidate):
                self.value = candidate
                return True
            if self.stop_on_reject:
                break
            misses += 1
            if self.max_lookahead > 0 and misses >= self.max_lookahead:
                logger.warning(
                    f"Max lookahead of {self.max_lookahead} steps reached on {seq!r}. Bailing out"
                )
                break
        self.ended = True
        return False

    def produce(self, seq, *args):
        value, self.value = self.value, _NOTHING
        return seq.emit(value)


@dataclass
class _RoundRobin:
    sources: List[Sequence]
    cursor: int = 0

    def has_more(self, seq) -> bool:
        return any(source.has_next() for source in self.sources)

    def produce(self, seq, *args):
        count = len(self.sources)
        for offset in range(count):
            index = (self.cursor + offset) % count
            source = self.sources[index]
            if source.has_next():
                self.cursor = index + 1
                return seq.emit(source.next())
        return seq.emit(None)
