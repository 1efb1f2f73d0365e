"""
Background retry of failed syncs.

Each pass picks up to ``batch_size`` FAILED records, oldest attempt first,
and re-runs the ones whose backoff has elapsed. Delays grow
``base * 2 ** retry_count`` up to a ceiling:

    15min, 30min, 1h, 2h, 4h, ... 24h
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog

from books_sync.config import RetryMode, RetrySettings
from books_sync.models import SyncRecordState, SyncStatus
from books_sync.orchestrator import SyncOrchestrator
from books_sync.sources import OrderSource
from books_sync.store import RecordStateStore

logger = structlog.get_logger(__name__)

HEALTH_CHECK_TTL = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RetryRunSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    exhausted: int = 0
    skipped_reason: str | None = None
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "exhausted": self.exhausted,
            "skipped_reason": self.skipped_reason,
            "errors": dict(self.errors),
        }


class RetryScheduler:
    """
    Re-attempts FAILED records with bounded exponential backoff.

    Passes are single-flight: a second ``run()`` while one is in progress
    returns immediately.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        store: RecordStateStore,
        source: OrderSource,
        settings: RetrySettings | None = None,
        health_check: Callable[[], dict[str, Any]] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.source = source
        self.settings = settings or RetrySettings()
        self._health_check = health_check
        self._clock = clock

        self._run_lock = threading.Lock()
        self._health_cache: tuple[datetime, bool] | None = None

    def backoff(self, retry_count: int) -> timedelta:
        base = self.settings.backoff_minutes
        ceiling = self.settings.backoff_ceiling_minutes
        return timedelta(minutes=min(base * (2 ** retry_count), ceiling))

    def next_attempt_at(self, state: SyncRecordState) -> datetime | None:
        """When ``state`` becomes eligible again (None = immediately)."""
        if state.last_attempt_at is None:
            return None
        return state.last_attempt_at + self.backoff(state.retry_count)

    def is_exhausted(self, state: SyncRecordState) -> bool:
        if self.settings.mode == RetryMode.INDEFINITE:
            return False
        return state.retry_count >= self.settings.max_count

    def is_eligible(self, state: SyncRecordState, now: datetime | None = None) -> bool:
        if state.status != SyncStatus.FAILED or self.is_exhausted(state):
            return False
        due = self.next_attempt_at(state)
        return due is None or (now or self._clock()) >= due

    def _connection_healthy(self) -> bool:
        """Remote health, cached so an outage costs one call per window."""
        if self._health_check is None:
            return True

        now = self._clock()
        if self._health_cache and now - self._health_cache[0] < HEALTH_CHECK_TTL:
            return self._health_cache[1]

        healthy = self._health_check().get("status") == "healthy"
        self._health_cache = (now, healthy)
        return healthy

    def run(self) -> RetryRunSummary:
        """One retry pass."""
        summary = RetryRunSummary()

        if self.settings.mode == RetryMode.MANUAL:
            summary.skipped_reason = "manual_mode"
            return summary

        if not self._run_lock.acquire(blocking=False):
            logger.info("Retry pass already running, skipping")
            summary.skipped_reason = "already_running"
            return summary

        try:
            if not self._connection_healthy():
                logger.warning("Remote connection unhealthy, skipping retry pass", notify=True)
                summary.skipped_reason = "connection_unhealthy"
                return summary

            now = self._clock()
            summary.exhausted = len(self.store.find_by_status(SyncStatus.FAILED, where=self.is_exhausted))
            candidates = self.store.find_by_status(
                SyncStatus.FAILED,
                limit=self.settings.batch_size,
                where=lambda s: not self.is_exhausted(s),
            )

            for state in candidates:
                log = logger.bind(record_id=state.record_id, retry_count=state.retry_count)

                if not self.is_eligible(state, now):
                    summary.skipped += 1
                    continue

                order = self.source.get(state.record_id)
                if order is None:
                    log.warning("Local record missing, cannot retry")
                    summary.skipped += 1
                    continue

                summary.processed += 1
                result = self.orchestrator.retry_record(order)

                if result.success:
                    summary.succeeded += 1
                    log.info("Retry succeeded", invoice_id=result.remote_invoice_id)
                elif result.status == SyncStatus.PENDING:
                    # Another trigger holds the record; not a failed attempt
                    summary.skipped += 1
                else:
                    count = self.store.increment_retry_count(state.record_id)
                    summary.failed += 1
                    summary.errors[state.record_id] = result.error or "unknown error"
                    log.warning("Retry failed", error=result.error, retry_count=count)
                    if self.is_exhausted(state.model_copy(update={"retry_count": count})):
                        log.error(
                            "Retries exhausted, manual intervention required",
                            error=result.error,
                        )
        finally:
            self._run_lock.release()

        logger.info("Retry pass complete", **summary.to_dict())
        return summary

    def run_forever(
        self,
        stop_event: threading.Event,
        on_pass: Callable[[RetryRunSummary], None] | None = None,
    ) -> None:
        """Run passes every ``interval_minutes`` until ``stop_event`` is set."""
        interval = self.settings.interval_minutes * 60
        while not stop_event.is_set():
            started = time.monotonic()
            summary = self.run()
            if on_pass:
                on_pass(summary)
            stop_event.wait(max(0.0, interval - (time.monotonic() - started)))
