"""
Persistence for sync state, reconciliation reports, and credentials.

Each store keeps its data in memory and, when given a file path, mirrors
it to a JSON document after every write. Writes go to a temp file first
and are then renamed over the original, so a crash never leaves a
half-written file behind.
"""

import json
import threading
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import structlog

from books_sync.models import (
    ReconciliationReport,
    ReportStatus,
    SyncRecordState,
    SyncStatus,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JsonFile:
    """Atomic JSON document on disk (or nothing, for in-memory use)."""

    def __init__(self, path: str | Path | None):
        self.path = Path(path) if path is not None else None
        self._log = logger.bind(path=str(self.path) if self.path else None)

    def load(self) -> Any | None:
        if self.path is None or not self.path.exists():
            return None

        try:
            with open(self.path, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self._log.warning("Failed to load state file, starting fresh", error=str(e))
            return None

    def save(self, data: Any) -> None:
        """Write to temp file, then atomic rename."""
        if self.path is None:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.path.with_suffix(".tmp")
        try:
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2)
            temp_file.replace(self.path)
        except OSError as e:
            self._log.error("Failed to save state file", error=str(e))
            raise

    def clear(self) -> None:
        if self.path is not None and self.path.exists():
            self.path.unlink()
            self._log.info("Cleared state file")


class RecordStateStore:
    """
    Per-record sync state keyed by local record id.

    Pure storage: no remote calls. Every saved state is re-validated so the
    model invariants (e.g. no pending record with a remote invoice id)
    hold for everything on disk.

    Usage:
        store = RecordStateStore("/path/to/sync_state.json")
        state = store.get_or_create("1042")
        state.status = SyncStatus.SYNCED
        store.save(state)

        for state in store.find_by_status(SyncStatus.FAILED, limit=10):
            ...
    """

    def __init__(
        self,
        state_file: str | Path | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._file = JsonFile(state_file)
        self._clock = clock
        self._lock = threading.RLock()
        self._states: dict[str, SyncRecordState] = {}
        self._log = logger.bind(store="record_state")

        raw = self._file.load() or {}
        for record_id, data in raw.get("records", {}).items():
            try:
                self._states[record_id] = SyncRecordState.model_validate(data)
            except ValueError as e:
                self._log.warning("Skipping invalid stored state", record_id=record_id, error=str(e))

        if self._states:
            self._log.info("Loaded sync state", records=len(self._states))

    def _flush(self) -> None:
        """Persist all states. Must hold lock."""
        self._file.save({
            "records": {
                record_id: state.model_dump(mode="json")
                for record_id, state in self._states.items()
            }
        })

    def get(self, record_id: str) -> SyncRecordState | None:
        with self._lock:
            state = self._states.get(str(record_id))
            return state.model_copy(deep=True) if state else None

    def get_or_create(self, record_id: str) -> SyncRecordState:
        """Return existing state, or a fresh PENDING state (not yet saved)."""
        return self.get(record_id) or SyncRecordState(record_id=str(record_id))

    def save(self, state: SyncRecordState) -> SyncRecordState:
        """Validate and persist a state. Returns the stored copy."""
        data = state.model_dump()
        data["updated_at"] = self._clock()
        validated = SyncRecordState.model_validate(data)

        with self._lock:
            self._states[validated.record_id] = validated
            self._flush()

        return validated.model_copy(deep=True)

    def update(self, record_id: str, **fields: Any) -> SyncRecordState:
        """Set individual fields on a record's state."""
        with self._lock:
            state = self.get_or_create(record_id)
            return self.save(state.model_copy(update=fields))

    def increment_retry_count(self, record_id: str) -> int:
        with self._lock:
            state = self.get_or_create(record_id)
            state.retry_count += 1
            return self.save(state).retry_count

    def find_by_status(
        self,
        status: SyncStatus,
        limit: int | None = None,
        oldest_first: bool = True,
        where: Callable[[SyncRecordState], bool] | None = None,
    ) -> list[SyncRecordState]:
        """
        States with ``status``, ordered by last attempt (never-attempted first).

        ``where`` filters before ``limit`` is applied.
        """
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        with self._lock:
            matches = [
                s for s in self._states.values()
                if s.status == status and (where is None or where(s))
            ]

        matches.sort(
            key=lambda s: s.last_attempt_at or epoch,
            reverse=not oldest_first,
        )
        if limit is not None:
            matches = matches[:limit]
        return [s.model_copy(deep=True) for s in matches]

    def find_in_date_range(self, start: date, end: date) -> list[SyncRecordState]:
        """States whose record date falls within [start, end]."""
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._states.values()
                if s.record_date is not None and start <= s.record_date <= end
            ]

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in SyncStatus}
        with self._lock:
            for state in self._states.values():
                counts[state.status.value] += 1
        return counts

    def purge(self, record_id: str) -> bool:
        """Explicit data purge. The only way a state is ever deleted."""
        with self._lock:
            if self._states.pop(str(record_id), None) is None:
                return False
            self._flush()
        self._log.info("Purged sync state", record_id=record_id)
        return True


class ReportRepository:
    """Stores reconciliation reports by id."""

    def __init__(
        self,
        state_file: str | Path | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._file = JsonFile(state_file)
        self._clock = clock
        self._lock = threading.Lock()
        self._reports: dict[str, ReconciliationReport] = {}
        self._log = logger.bind(store="reports")

        raw = self._file.load() or {}
        for data in raw.get("reports", []):
            try:
                report = ReconciliationReport.model_validate(data)
            except ValueError as e:
                self._log.warning("Skipping invalid stored report", error=str(e))
                continue
            self._reports[report.id] = report

    def _flush(self) -> None:
        self._file.save({
            "reports": [r.model_dump(mode="json") for r in self._reports.values()]
        })

    def save(self, report: ReconciliationReport) -> None:
        with self._lock:
            self._reports[report.id] = report.model_copy(deep=True)
            self._flush()

    def get(self, report_id: str) -> ReconciliationReport | None:
        with self._lock:
            report = self._reports.get(report_id)
            return report.model_copy(deep=True) if report else None

    def latest(self) -> ReconciliationReport | None:
        with self._lock:
            if not self._reports:
                return None
            report = max(self._reports.values(), key=lambda r: r.generated_at)
            return report.model_copy(deep=True)

    def find_by_status(self, status: ReportStatus) -> list[ReconciliationReport]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._reports.values()
                if r.status == status
            ]

    def mark_stale_reports_failed(self, timeout: timedelta) -> int:
        """Fail reports stuck in ``running`` longer than ``timeout``."""
        cutoff = self._clock() - timeout
        swept = 0

        with self._lock:
            for report in self._reports.values():
                if report.status == ReportStatus.RUNNING and report.generated_at < cutoff:
                    report.status = ReportStatus.FAILED
                    report.error = (
                        f"Report timed out after {int(timeout.total_seconds() // 60)} "
                        "minutes (process likely crashed)"
                    )
                    swept += 1
            if swept:
                self._flush()

        if swept:
            self._log.warning("Marked stale reports as failed", count=swept)
        return swept

    def delete_older_than(self, days: int) -> int:
        cutoff = self._clock() - timedelta(days=days)
        with self._lock:
            old = [rid for rid, r in self._reports.items() if r.generated_at < cutoff]
            for rid in old:
                del self._reports[rid]
            if old:
                self._flush()
        return len(old)
