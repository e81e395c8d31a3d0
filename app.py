"""
Lazy Sequence Service

HTTP surface over the lazy sequence engine.
Features:
- Named map/filter/take_while pipelines over a fixed or cyclic source
- Round-robin merging of several sources
- Bounded prime generation from an infinite sequence
- Retry backoff calculator for backlog entries
"""

import datetime

from fastapi import FastAPI, HTTPException, Query

from lazy import SequenceError
from models import (
    MergeRequest,
    RetryDelayResponse,
    RetryPolicy,
    RetryStrategy,
    SequenceRequest,
    SequenceResponse,
    StatusResponse,
)
from retry import BacklogEntry, retry_delay
from utils import measure_performance, primes, process_merge, process_sequence, setup_logging

logger = setup_logging()

app = FastAPI(
    title="Lazy Sequence Service",
    description="Composable lazy sequences with backoff-scheduled retries",
    version="1.0.0"
)


@app.get("/health", response_model=StatusResponse)
async def health() -> StatusResponse:
    return StatusResponse(status="ok", timestamp=datetime.datetime.now().isoformat())


@app.post("/sequences/process", response_model=SequenceResponse)
async def process_sequence_endpoint(request: SequenceRequest) -> SequenceResponse:
    """
    Build a sequence from the request source, apply the named operations
    lazily and collect the result (bounded by ``take`` when given).
    """
    try:
        outcome = process_sequence(request.source, request.operations, request.take, request.cycle)
    except (SequenceError, ValueError) as e:
        logger.warning(f"Sequence processing rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    return SequenceResponse(
        result=outcome["result"],
        count=len(outcome["result"]),
        operations_applied=outcome["operations_applied"],
        performance=outcome["performance"]
    )


@app.post("/sequences/merge", response_model=SequenceResponse)
async def merge_sequences_endpoint(request: MergeRequest) -> SequenceResponse:
    """Merge the sources round-robin, skipping exhausted ones."""
    try:
        outcome = process_merge(request.sources, request.take)
    except SequenceError as e:
        logger.warning(f"Sequence merge rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    return SequenceResponse(
        result=outcome["result"],
        count=len(outcome["result"]),
        operations_applied=outcome["operations_applied"],
        performance=outcome["performance"]
    )


@app.get("/sequences/primes", response_model=SequenceResponse)
async def primes_endpoint(count: int = Query(10, ge=1, le=1000)) -> SequenceResponse:
    """First ``count`` primes, taken from an infinite sequence."""
    result, performance = measure_performance("primes", primes().take, count)
    return SequenceResponse(
        result=result,
        count=len(result),
        operations_applied=["filter:prime", f"take:{count}"],
        performance=performance
    )


@app.get("/retry/delay", response_model=RetryDelayResponse)
async def retry_delay_endpoint(
    strategy: RetryStrategy = Query(RetryStrategy.FIXED),
    retry_interval: float = Query(1000.0, ge=0),
    failed_count: int = Query(1, ge=1, le=64)
) -> RetryDelayResponse:
    """Delay before a backlog entry with ``failed_count`` failures may be retried."""
    policy = RetryPolicy(retry_strategy=strategy, retry_interval=retry_interval)
    entry = BacklogEntry(key="preview", failed_at=0.0, failed_count=failed_count)
    return RetryDelayResponse(
        strategy=strategy,
        retry_interval=retry_interval,
        failed_count=failed_count,
        delay_ms=retry_delay(entry, policy)
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
