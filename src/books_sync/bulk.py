"""Batch sync over many records."""

import threading
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Iterable

import structlog

from books_sync.models import LocalOrder, SyncResult
from books_sync.orchestrator import SyncOrchestrator
from books_sync.sources import OrderSource

logger = structlog.get_logger(__name__)


@dataclass
class BatchResult:
    success_count: int = 0
    failed_count: int = 0
    cancelled: bool = False
    results: dict[str, SyncResult] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "cancelled": self.cancelled,
            "results": {k: v.model_dump(mode="json") for k, v in self.results.items()},
        }


class BulkRunner:
    """
    Sequential sync over a list of ids or a date range.

    Records are processed one at a time so the shared rate limiter is never
    starved by a batch. Disposition and payment rules come from the trigger
    policy, exactly as for a single status-change sync.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        source: OrderSource,
        delay_seconds: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.orchestrator = orchestrator
        self.source = source
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    def _orders(
        self,
        record_ids: Iterable[str] | None,
        date_range: tuple[date, date] | None,
    ) -> list[tuple[str, LocalOrder | None]]:
        if record_ids is not None:
            return [(str(rid), self.source.get(str(rid))) for rid in record_ids]
        if date_range is None:
            raise ValueError("Either record_ids or date_range is required")
        start, end = date_range
        if start > end:
            raise ValueError("date_range start must not be after end")
        return [(o.id, o) for o in self.source.find_in_date_range(start, end)]

    def sync_batch(
        self,
        record_ids: Iterable[str] | None = None,
        date_range: tuple[date, date] | None = None,
        as_draft: bool | None = None,
        cancel_event: threading.Event | None = None,
        on_progress: Callable[[str, SyncResult], None] | None = None,
    ) -> BatchResult:
        """
        Sync each record and aggregate the results.

        Args:
            record_ids: Explicit ids (takes precedence over date_range)
            date_range: Inclusive (start, end) of record creation dates
            as_draft: Override the status-derived disposition
            cancel_event: Checked between records
            on_progress: Called after each record
        """
        batch = BatchResult()
        orders = self._orders(record_ids, date_range)
        log = logger.bind(batch_size=len(orders))
        log.info("Starting bulk sync")

        for index, (record_id, order) in enumerate(orders):
            if cancel_event is not None and cancel_event.is_set():
                batch.cancelled = True
                log.info("Bulk sync cancelled", processed=index)
                break

            if order is None:
                result = SyncResult.failure(f"Record {record_id} not found", error_kind="not_found")
            else:
                result = self.orchestrator.sync_for_status(order, as_draft=as_draft)

            batch.results[record_id] = result
            if result.success:
                batch.success_count += 1
            else:
                batch.failed_count += 1

            if on_progress:
                on_progress(record_id, result)

            if self.delay_seconds and index < len(orders) - 1:
                self._sleep(self.delay_seconds)

        log.info(
            "Bulk sync complete",
            success_count=batch.success_count,
            failed_count=batch.failed_count,
            cancelled=batch.cancelled,
        )
        return batch
