"""
Batched execution of many operations with bounded concurrency.
"""

import asyncio
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Callable, Awaitable, Sequence

from aem_shared.errors import AEMException
from aem_shared.logging import get_logger
from .models import OperationResponse


@dataclass
class BulkOperationError:
    """Failure of one item, identified by its position in the input."""

    item_index: int
    item: Any
    error: str
    error_code: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class BulkOperationProgress:
    operation_id: str
    status: str
    total_items: int
    processed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    current_batch: int = 0
    total_batches: int = 0
    percentage: int = 0
    estimated_time_remaining: Optional[float] = None


@dataclass
class BulkOperationResult:
    success: bool
    total_items: int
    processed_items: int
    successful_items: int
    failed_items: int
    errors: List[BulkOperationError]
    results: List[Any]
    duration: float
    operation_id: str = ""


ProgressCallback = Callable[[BulkOperationProgress], None]


class BulkOperationRunner:
    """Runs an async operation over many items in sequential batches.

    Items inside a batch run concurrently, at most ``max_concurrency`` at a
    time. An ``OperationResponse`` with ``success=False`` counts as a failed
    item just like a raised exception.
    """

    def __init__(self, progress_callback: Optional[ProgressCallback] = None):
        self.progress_callback = progress_callback
        self.logger = get_logger("aem.bulk")

    async def run(
        self,
        items: Sequence[Any],
        operation: Callable[[Any, int], Awaitable[Any]],
        batch_size: int = 10,
        max_concurrency: int = 5,
        continue_on_error: bool = True,
        timeout: Optional[float] = None,
        delay_between_batches: float = 0.0,
    ) -> BulkOperationResult:
        if batch_size < 1 or max_concurrency < 1:
            raise ValueError("batch_size and max_concurrency must be at least 1")

        operation_id = str(uuid.uuid4())
        start_time = time.monotonic()
        total = len(items)
        progress = BulkOperationProgress(
            operation_id=operation_id,
            status="running",
            total_items=total,
            total_batches=math.ceil(total / batch_size),
        )
        semaphore = asyncio.Semaphore(max_concurrency)
        results: Dict[int, Any] = {}
        errors: List[BulkOperationError] = []

        self.logger.info(
            "Started bulk operation",
            operation_id=operation_id,
            total_items=total,
            batch_size=batch_size,
            max_concurrency=max_concurrency,
        )

        for batch_index in range(progress.total_batches):
            batch_start = batch_index * batch_size
            batch = items[batch_start:batch_start + batch_size]
            progress.current_batch = batch_index + 1

            outcomes = await asyncio.gather(*(
                self._run_item(semaphore, operation, item, batch_start + offset, timeout)
                for offset, item in enumerate(batch)
            ))

            batch_failed = False
            for index, ok, value in outcomes:
                if ok:
                    results[index] = value
                else:
                    errors.append(value)
                    batch_failed = True

            progress.processed_items += len(batch)
            progress.successful_items = len(results)
            progress.failed_items = len(errors)
            progress.percentage = round(progress.processed_items * 100 / total)
            elapsed = time.monotonic() - start_time
            progress.estimated_time_remaining = (
                elapsed / progress.processed_items * (total - progress.processed_items)
            )
            self._report(progress)

            if batch_failed and not continue_on_error:
                self.logger.warning(
                    "Stopping bulk operation after failed batch",
                    operation_id=operation_id,
                    batch=progress.current_batch,
                )
                break

            if delay_between_batches > 0 and batch_index < progress.total_batches - 1:
                await asyncio.sleep(delay_between_batches)

        errors.sort(key=lambda e: e.item_index)
        duration = time.monotonic() - start_time
        progress.status = "completed" if not errors else "failed"
        self._report(progress)

        self.logger.info(
            "Completed bulk operation",
            operation_id=operation_id,
            total_items=total,
            successful_items=len(results),
            failed_items=len(errors),
            duration=duration,
        )

        return BulkOperationResult(
            success=not errors,
            total_items=total,
            processed_items=progress.processed_items,
            successful_items=len(results),
            failed_items=len(errors),
            errors=errors,
            results=[results[i] for i in sorted(results)],
            duration=duration,
            operation_id=operation_id,
        )

    async def _run_item(self, semaphore, operation, item, index, timeout):
        async with semaphore:
            try:
                if timeout is not None:
                    value = await asyncio.wait_for(operation(item, index), timeout=timeout)
                else:
                    value = await operation(item, index)
            except asyncio.TimeoutError:
                return index, False, BulkOperationError(
                    index, item, f"Operation timed out after {timeout}s", "TIMEOUT_ERROR"
                )
            except AEMException as e:
                return index, False, BulkOperationError(index, item, e.message, e.kind.value)
            except Exception as e:
                self.logger.error("Bulk item failed", item_index=index, error=str(e))
                return index, False, BulkOperationError(index, item, str(e) or type(e).__name__)

        if isinstance(value, OperationResponse) and not value.success:
            return index, False, BulkOperationError(index, item, value.error.message, value.error.code.value)
        return index, True, value

    def _report(self, progress: BulkOperationProgress):
        if self.progress_callback is None:
            return
        snapshot = BulkOperationProgress(**vars(progress))
        try:
            self.progress_callback(snapshot)
        except Exception as e:
            self.logger.error("Progress callback failed", operation_id=progress.operation_id, error=str(e))
