"""Bulk batch coordinator - runs many send requests without flooding providers.

Requests are split into fixed-size batches. Requests inside a batch run
concurrently; batches run one after another with a short cooldown between
them. Results come back one per request, in input order.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterator, List, Optional, Sequence

from ..exceptions import NotificationValidationError

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500
DEFAULT_COOLDOWN_SECONDS = 0.1

MISSING_TARGETS = "Either user_ids or device_ids must be specified"
SCHEDULED_DEVICE_TARGETS = "scheduled_for is only supported with user_ids"


@dataclass
class BulkRequest:
    """One entry of a bulk send: a target list plus content."""
    content: Any
    user_ids: List[str] = field(default_factory=list)
    device_ids: List[str] = field(default_factory=list)
    created_by: Optional[str] = None

    def validate(self) -> None:
        if bool(self.user_ids) == bool(self.device_ids):
            raise NotificationValidationError(MISSING_TARGETS)
        if self.device_ids and getattr(self.content, "scheduled_for", None) is not None:
            raise NotificationValidationError(SCHEDULED_DEVICE_TARGETS)


@dataclass
class BulkResult:
    """Outcome of one bulk request."""
    index: int
    success: bool
    results: List[Any] = field(default_factory=list)
    error: Optional[str] = None


class BatchCoordinator:
    """Runs a handler over requests batch by batch."""

    def __init__(
        self,
        handler: Callable[[Any], Awaitable[List[Any]]],
        batch_size: int = DEFAULT_BATCH_SIZE,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.handler = handler
        self.batch_size = batch_size
        self.cooldown_seconds = cooldown_seconds

    def iter_batches(self, requests: Sequence[Any]) -> Iterator[Sequence[Any]]:
        for start in range(0, len(requests), self.batch_size):
            yield requests[start:start + self.batch_size]

    async def run(self, requests: Sequence[Any]) -> List[BulkResult]:
        requests = list(requests)
        results: List[BulkResult] = []
        batches = list(self.iter_batches(requests))

        for number, batch in enumerate(batches):
            offset = number * self.batch_size
            batch_results = await asyncio.gather(*[
                self._run_one(offset + position, request)
                for position, request in enumerate(batch)
            ])
            results.extend(batch_results)
            logger.info(f"Bulk batch {number + 1}/{len(batches)} done ({len(batch)} requests)")

            # Pause between batches to stay under provider rate limits
            if number < len(batches) - 1:
                await asyncio.sleep(self.cooldown_seconds)

        return results

    async def _run_one(self, index: int, request: Any) -> BulkResult:
        try:
            outcome = await self.handler(request)
        except Exception as e:
            logger.warning(f"Bulk request {index} failed: {type(e).__name__}: {e}")
            return BulkResult(index=index, success=False, error=str(e))

        outcome = list(outcome or [])
        return BulkResult(
            index=index,
            success=any(getattr(item, "success", False) for item in outcome),
            results=outcome,
        )
