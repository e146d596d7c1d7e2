"""
Fixed-size batch runner with per-item outcomes.

Each batch is fanned out with ``asyncio`` and awaited as a whole; one
failing or slow item never aborts its batch-mates. An optional deadline
bounds the run: work not finished by then is cancelled and reported as
timed out, and later batches are not started.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from pydantic import BaseModel, Field

from shared.errors import AccessReviewException


T = TypeVar("T")


class BatchStatus(str, Enum):
    """Overall outcome of a batch operation."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def http_status(self) -> int:
        return {BatchStatus.SUCCESS: 200, BatchStatus.PARTIAL: 207, BatchStatus.FAILED: 500}[self]


@dataclass
class BatchError:
    """One failed item."""
    index: int
    key: Optional[str]
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "key": self.key, "error": self.error}


@dataclass
class BatchOutcome:
    """Accumulated results of ``run_batches``."""
    ok: int = 0
    failed: int = 0
    errors: List[BatchError] = field(default_factory=list)
    succeeded_keys: List[str] = field(default_factory=list)
    results: List[Any] = field(default_factory=list)
    timed_out: bool = False
    not_started: int = 0

    @property
    def status(self) -> BatchStatus:
        return summarize(self.ok, self.failed + self.not_started)


def summarize(ok: int, problems: int) -> BatchStatus:
    """Distinguish full success, mixed outcome, and full failure."""
    if problems == 0:
        return BatchStatus.SUCCESS
    if ok == 0:
        return BatchStatus.FAILED
    return BatchStatus.PARTIAL


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, AccessReviewException):
        return exc.message
    return str(exc) or exc.__class__.__name__


async def run_batches(
    items: Sequence[T],
    batch_size: int,
    fn: Callable[[T], Awaitable[Any]],
    key: Optional[Callable[[T], Optional[str]]] = None,
    deadline: Optional[float] = None,
) -> BatchOutcome:
    """
    Run ``fn`` over ``items`` in batches of ``batch_size``.

    ``deadline`` is an absolute ``loop.time()`` value.
    """
    loop = asyncio.get_running_loop()
    outcome = BatchOutcome()
    key = key or (lambda item: None)

    for start in range(0, len(items), batch_size):
        remaining = None if deadline is None else deadline - loop.time()
        if remaining is not None and remaining <= 0:
            outcome.timed_out = True
            outcome.not_started = len(items) - start
            break

        chunk = items[start:start + batch_size]
        tasks = [asyncio.ensure_future(fn(item)) for item in chunk]
        done, pending = await asyncio.wait(tasks, timeout=remaining)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            outcome.timed_out = True

        for offset, (item, task) in enumerate(zip(chunk, tasks)):
            if task in pending:
                outcome.failed += 1
                outcome.errors.append(BatchError(start + offset, key(item), "timed out"))
                continue
            exc = task.exception()
            if exc is not None:
                outcome.failed += 1
                outcome.errors.append(BatchError(start + offset, key(item), describe_error(exc)))
                continue
            outcome.ok += 1
            outcome.results.append(task.result())
            item_key = key(item)
            if item_key is not None:
                outcome.succeeded_keys.append(item_key)

        if outcome.timed_out:
            outcome.not_started = len(items) - (start + len(chunk))
            break

    return outcome


async def gather_in_batches(
    items: Sequence[T],
    batch_size: int,
    fn: Callable[[T], Awaitable[Any]],
) -> List[Any]:
    """Like ``run_batches`` but returns results/exceptions positionally."""
    results: List[Any] = []
    for start in range(0, len(items), batch_size):
        chunk = items[start:start + batch_size]
        results.extend(await asyncio.gather(*(fn(item) for item in chunk), return_exceptions=True))
    return results


class ImportResult(BaseModel):
    """Summary returned by the bulk import endpoints."""

    status: BatchStatus
    processed: int = 0
    upserted: int = 0
    deleted: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def http_status(self) -> int:
        return self.status.http_status

    @classmethod
    def from_outcome(cls, outcome: BatchOutcome, processed: int) -> "ImportResult":
        """Build from a run whose per-item results are ``"upserted"`` or ``"deleted"``."""
        return cls(
            status=outcome.status,
            processed=processed,
            upserted=sum(1 for r in outcome.results if r == "upserted"),
            deleted=sum(1 for r in outcome.results if r == "deleted"),
            failed=outcome.failed + outcome.not_started,
            errors=[e.to_dict() for e in outcome.errors],
        )
