"""
Utility functions for lazy sequences.

Logging setup, performance measurement, adapters that turn common external
sources (paginated queries, blocking queues, counters) into producers, and
the named-operation pipeline builder used by the HTTP API.
"""

import gc
import itertools
import logging
import os
import sys
import time
import tracemalloc
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence as SequenceType, Tuple

from lazy import Sequence
from models import OperationSpec, OperationType


# ---------- Logging Setup ----------

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s'


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Configure logging from LAZY_LOG_LEVEL / LAZY_LOG_FILE and return the package logger."""
    level_name = (level or os.environ.get('LAZY_LOG_LEVEL', 'INFO')).upper()
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = os.environ.get('LAZY_LOG_FILE')
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers
    )
    return logging.getLogger('lazy_sequence')


logger = logging.getLogger(__name__)


# ---------- Performance tracking ----------

@dataclass
class PerformanceLog:
    """Performance info of every measured run since the last clear."""
    operations: List[Dict[str, Any]] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        count = len(self.operations)
        total_time = sum(op["execution_time_ms"] for op in self.operations)
        total_memory = sum(op["memory_usage_mb"] for op in self.operations)
        return {
            "total_operations": count,
            "failed_operations": sum(1 for op in self.operations if not op["success"]),
            "total_time_ms": total_time,
            "total_memory_mb": total_memory,
            "avg_time_ms": total_time / count if count else 0.0,
            "avg_memory_mb": total_memory / count if count else 0.0,
        }


_performance_log = PerformanceLog()


def measure_performance(operation_name: str, func, *args, **kwargs) -> Tuple[Any, Dict[str, Any]]:
    """Run ``func`` with timing and memory tracking; return (result, performance info)."""
    tracemalloc.start()
    gc.collect()
    start_time = time.perf_counter()
    success = False
    error = None

    try:
        result = func(*args, **kwargs)
        success = True
        return result, _record(operation_name, start_time, success, result=result)
    except Exception as e:
        error = str(e)
        raise
    finally:
        if not success:
            _record(operation_name, start_time, success, error=error)
        tracemalloc.stop()


def _record(operation_name: str, start_time: float, success: bool,
            result: Any = None, error: Optional[str] = None) -> Dict[str, Any]:
    execution_time_ms = (time.perf_counter() - start_time) * 1000
    current, peak = tracemalloc.get_traced_memory()
    memory_mb = peak / 1024 / 1024

    performance_info = {
        "operation": operation_name,
        "execution_time_ms": execution_time_ms,
        "memory_usage_mb": memory_mb,
        "success": success,
        "timestamp": time.time()
    }
    if success:
        performance_info["result_size"] = len(result) if hasattr(result, "__len__") else None
    else:
        performance_info["error"] = error

    _performance_log.operations.append(performance_info)
    return performance_info


def get_performance_summary() -> Dict[str, Any]:
    return _performance_log.summary()


def clear_performance_metrics():
    _performance_log.operations.clear()


# ---------- Producer adapters ----------

@dataclass
class _PageCursor:
    """
    One page is fetched per outer step and served through a nested sequence.
    The next page is fetched only once the current one is drained; a short
    page marks the end, so no extra query runs after the last page.
    """
    fetch_page: Callable[[int, int], List[Any]]
    page_size: int
    page: int = 0
    pending: Optional[List[Any]] = None
    exhausted: bool = False

    def has_more(self, seq) -> bool:
        if self.pending is None and not self.exhausted:
            rows = list(self.fetch_page(self.page, self.page_size))
            self.page += 1
            if len(rows) < self.page_size:
                self.exhausted = True
            if rows:
                self.pending = rows
        return self.pending is not None

    def produce(self, seq, *args):
        rows, self.pending = self.pending, None
        return seq.emit_all(Sequence.from_list(rows))


def paginated(fetch_page: Callable[[int, int], List[Any]], page_size: int = 100,
              finite: bool = True) -> Sequence:
    """Flatten ``fetch_page(page_number, page_size)`` results (0-indexed pages) into one sequence."""
    if page_size < 1:
        raise ValueError("page_size must be >= 1")
    cursor = _PageCursor(fetch_page, page_size)
    return Sequence(
        producer=cursor.produce,
        has_more=cursor.has_more,
        finite=finite,
        signature="paginated"
    )


def query_pages(connection, sql: str, params: SequenceType[Any] = (), page_size: int = 100) -> Sequence:
    """Lazily page through an sqlite3 query with LIMIT/OFFSET."""

    def fetch_page(page: int, size: int) -> List[Any]:
        cursor = connection.cursor()
        cursor.execute(f"{sql} LIMIT ? OFFSET ?", (*params, size, page * size))
        rows = cursor.fetchall()
        logger.debug(f"Fetched page {page} ({len(rows)} rows)")
        return rows

    return paginated(fetch_page, page_size)


@dataclass
class _QueueCursor:
    pop: Callable[[], Any]
    is_open: Callable[[], bool]

    def has_more(self, seq) -> bool:
        return self.is_open()

    def produce(self, seq, *args):
        return seq.emit(self.pop())


def from_queue(pop: Callable[[], Any], is_open: Optional[Callable[[], bool]] = None) -> Sequence:
    """
    Wrap a blocking pop. The whole sequence chain blocks while ``pop`` waits.
    Without ``is_open`` the queue is consumed forever.
    """
    cursor = _QueueCursor(pop, is_open or (lambda: True))
    return Sequence(
        producer=cursor.produce,
        has_more=cursor.has_more,
        finite=False,
        no_wrap=True,
        signature="queue"
    )


def count_from(start: int = 0, step: int = 1) -> Sequence:
    return Sequence.from_iterable(itertools.count(start, step))


def is_prime(n: int) -> bool:
    if n < 2:
        return False
    if n % 2 == 0:
        return n == 2
    divisor = 3
    while divisor * divisor <= n:
        if n % divisor == 0:
            return False
        divisor += 2
    return True


def primes() -> Sequence:
    """The infinite sequence of primes."""
    return count_from(2).filter(is_prime)


# ---------- Named operations ----------

MAP_FUNCTIONS: Dict[str, Callable[[Any], Any]] = {
    "identity": lambda x: x,
    "double": lambda x: x * 2,
    "square": lambda x: x * x,
    "increment": lambda x: x + 1,
    "negate": lambda x: -x,
    "upper": lambda x: str(x).upper(),
}

PREDICATES: Dict[str, Callable[[Any], bool]] = {
    "even": lambda x: x % 2 == 0,
    "odd": lambda x: x % 2 == 1,
    "positive": lambda x: x > 0,
    "negative": lambda x: x < 0,
    "nonzero": lambda x: x != 0,
    "truthy": bool,
    "prime": lambda x: isinstance(x, int) and is_prime(x),
}


def apply_operations(sequence: Sequence, operations: List[OperationSpec]) -> Tuple[Sequence, List[str]]:
    """Chain named operations onto ``sequence``; unknown names raise ValueError."""
    applied = []
    for op in operations:
        if op.type == OperationType.MAP:
            fn = MAP_FUNCTIONS.get(op.function)
            if fn is None:
                raise ValueError(f"Unknown map function: {op.function}")
            sequence = sequence.map(lambda _, x, fn=fn: fn(x))
        else:
            pred = PREDICATES.get(op.function)
            if pred is None:
                raise ValueError(f"Unknown predicate: {op.function}")
            if op.type == OperationType.FILTER:
                sequence = sequence.filter(pred, max_lookahead=op.max_lookahead)
            else:
                sequence = sequence.take_while(pred, max_lookahead=op.max_lookahead)
        applied.append(f"{op.type.value}:{op.function}")
    return sequence, applied


def collect(sequence: Sequence, take: Optional[int] = None) -> List[Any]:
    """to_list() for finite sequences, take() when a bound is given."""
    if take is not None:
        return sequence.take(take)
    return sequence.to_list()


def process_sequence(source: List[Any], operations: List[OperationSpec],
                     take: Optional[int] = None, cycle: bool = False) -> Dict[str, Any]:
    """Build, run and measure a pipeline over ``source``."""
    if cycle:
        unbounded = [op for op in operations if op.scans_unbounded]
        if unbounded:
            raise ValueError(
                f"filter:{unbounded[0].function} on a cycled source requires max_lookahead > 0"
            )
    sequence = Sequence.cycle(source) if cycle else Sequence.from_list(source)
    sequence, applied = apply_operations(sequence, operations)
    result, performance = measure_performance("process_sequence", collect, sequence, take)
    performance["input_size"] = len(source)
    performance["output_size"] = len(result)
    logger.info(f"Processed {len(source)} source elements through {len(applied)} operations -> {len(result)} results")
    return {
        "result": result,
        "operations_applied": applied,
        "performance": performance
    }


def process_merge(sources: List[List[Any]], take: Optional[int] = None) -> Dict[str, Any]:
    """Round-robin merge of fixed sources."""
    sequence = Sequence.merge(*(Sequence.from_list(source) for source in sources))
    result, performance = measure_performance("process_merge", collect, sequence, take)
    performance["input_size"] = sum(len(source) for source in sources)
    performance["output_size"] = len(result)
    return {
        "result": result,
        "operations_applied": [f"merge:{len(sources)}"],
        "performance": performance
    }
