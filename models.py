"""Models for retry configuration and the sequence API (policies, requests, responses)."""

import os
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class OnFailure(str, Enum):
    """What to do when a production step fails."""
    RETRY = "retry"
    FAIL = "fail"
    IGNORE = "ignore"


class RetryStrategy(str, Enum):
    """How the retry delay grows with the failure count."""
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class BacklogOrder(str, Enum):
    """Which failed entry is retried first."""
    FIFO = "fifo"
    LIFO = "lifo"
    IMMEDIATE = "immediate"


class RetryPolicy(BaseModel):
    """Immutable failure-handling configuration attached to a resilient sequence."""
    model_config = ConfigDict(frozen=True)

    on_failure: OnFailure = Field(
        default=OnFailure.RETRY,
        description="Failure policy: retry, fail or ignore"
    )
    retry_strategy: RetryStrategy = Field(
        default=RetryStrategy.FIXED,
        description="Backoff strategy for backlog entries"
    )
    backlog_order: BacklogOrder = Field(
        default=BacklogOrder.FIFO,
        description="Order in which backlog entries are retried"
    )
    retry_interval: float = Field(
        default=1000.0,
        ge=0,
        description="Base retry delay in milliseconds"
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Maximum number of attempts per key, first attempt included"
    )
    raise_on_exhausted: bool = Field(
        default=False,
        description="Raise AttemptsExhaustedError instead of only reporting it"
    )

    @field_validator('on_failure', 'retry_strategy', 'backlog_order', mode='before')
    @classmethod
    def normalize_choice(cls, v):
        """Accept enum values case-insensitively."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @classmethod
    def from_env(cls, prefix: str = "LAZY_RETRY_", environ: Optional[Mapping[str, str]] = None) -> "RetryPolicy":
        """Build a policy from environment variables, e.g. LAZY_RETRY_STRATEGY=linear."""
        env = os.environ if environ is None else environ
        names = {
            'on_failure': 'ON_FAILURE',
            'retry_strategy': 'STRATEGY',
            'backlog_order': 'BACKLOG_ORDER',
            'retry_interval': 'INTERVAL_MS',
            'max_attempts': 'MAX_ATTEMPTS',
            'raise_on_exhausted': 'RAISE_ON_EXHAUSTED',
        }
        values = {}
        for field_name, env_name in names.items():
            raw = env.get(prefix + env_name)
            if raw is not None and raw.strip() != "":
                values[field_name] = raw.strip()
        return cls(**values)


# ---------- API models ----------

class OperationType(str, Enum):
    """Pipeline operations exposed over HTTP."""
    MAP = "map"
    FILTER = "filter"
    TAKE_WHILE = "take_while"


class OperationSpec(BaseModel):
    """One named pipeline step."""
    type: OperationType = Field(..., description="Operation to apply")
    function: str = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Name of a registered map function or predicate"
    )
    max_lookahead: int = Field(
        default=0,
        ge=0,
        le=100_000,
        description="Lookahead bound for filter/take_while on infinite sources"
    )

    @property
    def scans_unbounded(self) -> bool:
        """A filter with no lookahead bound may scan an endless source forever."""
        return self.type == OperationType.FILTER and self.max_lookahead == 0


class SequenceRequest(BaseModel):
    """Build a sequence from ``source``, apply ``operations`` and collect the result."""
    source: List[Any] = Field(..., max_length=100_000, description="Source elements")
    operations: List[OperationSpec] = Field(default_factory=list, description="Pipeline steps in order")
    take: Optional[int] = Field(None, ge=0, le=100_000, description="Collect at most this many elements")
    cycle: bool = Field(False, description="Repeat the source forever (requires take)")

    @model_validator(mode='after')
    def validate_bounded(self):
        """An endless source needs an explicit bound."""
        if self.cycle and self.take is None:
            raise ValueError("cycle requires take to be specified")
        if self.cycle:
            for op in self.operations:
                if op.scans_unbounded:
                    raise ValueError(f"filter:{op.function} on a cycled source requires max_lookahead > 0")
        return self


class MergeRequest(BaseModel):
    """Round-robin merge of several sources."""
    sources: List[List[Any]] = Field(..., min_length=1, max_length=100, description="Sources to merge")
    take: Optional[int] = Field(None, ge=0, le=100_000, description="Collect at most this many elements")


class SequenceResponse(BaseModel):
    """Collected elements plus processing info."""
    ok: bool = Field(True, description="Processing success status")
    result: List[Any] = Field(..., description="Collected elements")
    count: int = Field(..., ge=0, description="Number of collected elements")
    operations_applied: List[str] = Field(default_factory=list, description="Operations applied in order")
    performance: Dict[str, Any] = Field(default_factory=dict, description="Timing and memory figures")


class RetryDelayResponse(BaseModel):
    """Computed backoff for a backlog entry."""
    strategy: RetryStrategy = Field(..., description="Backoff strategy")
    retry_interval: float = Field(..., ge=0, description="Base delay in milliseconds")
    failed_count: int = Field(..., ge=1, description="Failures recorded so far")
    delay_ms: float = Field(..., ge=0, description="Delay before the entry is eligible again")


class StatusResponse(BaseModel):
    """Generic status payload."""
    status: str = Field(..., description="Status message")
    timestamp: str = Field(..., description="Response timestamp")
    data: Optional[Dict[str, Any]] = Field(None, description="Additional data")
