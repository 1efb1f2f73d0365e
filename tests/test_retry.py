"""
Tests for the background retry scheduler.
"""

import threading
from datetime import timedelta

import pytest

from books_sync.config import RetryMode, RetrySettings
from books_sync.models import SyncRecordState, SyncStatus
from books_sync.retry import RetryScheduler


def fail_draft_sync(engine, books, order):
    books.fail_next("POST", "/invoices", status=503)
    result = engine.sync_record(order, as_draft=True)
    assert not result.success
    return engine.store.get(order.id)


class TestBackoff:
    """Backoff schedule and eligibility."""

    def test_schedule_doubles_up_to_ceiling(self, engine):
        delays = [engine.scheduler.backoff(n) for n in range(10)]
        minutes = [d.total_seconds() / 60 for d in delays]

        assert minutes[:5] == [15, 30, 60, 120, 240]
        assert minutes == sorted(minutes)
        assert max(minutes) == 1440

    def test_never_attempted_is_eligible(self, engine):
        state = SyncRecordState(record_id="1", status=SyncStatus.FAILED)
        assert engine.scheduler.is_eligible(state)

    def test_eligible_only_after_backoff(self, engine, clock):
        state = SyncRecordState(
            record_id="1",
            status=SyncStatus.FAILED,
            retry_count=1,
            last_attempt_at=clock.now,
        )
        assert not engine.scheduler.is_eligible(state, clock.now + timedelta(minutes=29))
        assert engine.scheduler.is_eligible(state, clock.now + timedelta(minutes=30))

    def test_only_failed_records_are_eligible(self, engine):
        state = SyncRecordState(record_id="1", status=SyncStatus.DRAFT, remote_invoice_id="9")
        assert not engine.scheduler.is_eligible(state)

    def test_exhaustion(self, engine):
        state = SyncRecordState(record_id="1", status=SyncStatus.FAILED, retry_count=5)
        assert engine.scheduler.is_exhausted(state)
        assert not engine.scheduler.is_eligible(state)

    def test_indefinite_never_exhausts(self, engine):
        engine.scheduler.settings = RetrySettings(mode=RetryMode.INDEFINITE)
        state = SyncRecordState(record_id="1", status=SyncStatus.FAILED, retry_count=500)
        assert not engine.scheduler.is_exhausted(state)


class TestRetryPass:
    """Tests for RetryScheduler.run()."""

    def test_not_due_yet(self, engine, books, order):
        fail_draft_sync(engine, books, order)

        summary = engine.run_retries()

        assert summary.processed == 0
        assert summary.skipped == 1

    def test_retries_after_backoff(self, engine, books, order, clock):
        fail_draft_sync(engine, books, order)
        clock.advance(15 * 60)

        summary = engine.run_retries()

        assert summary.succeeded == 1
        state = engine.store.get("1042")
        assert state.status == SyncStatus.DRAFT
        assert state.retry_count == 0
        assert len(books.api_calls("POST", "/invoices")) == 2

    def test_failed_retry_increments_count(self, engine, books, order, clock):
        fail_draft_sync(engine, books, order)
        clock.advance(15 * 60)
        books.fail_next("POST", "/invoices", status=503)

        summary = engine.run_retries()

        assert summary.failed == 1
        assert "503" in summary.errors["1042"]
        assert engine.store.get("1042").retry_count == 1

        clock.advance(15 * 60)
        assert engine.run_retries().skipped == 1

        clock.advance(15 * 60)
        assert engine.run_retries().succeeded == 1

    def test_exhausted_records_are_left_alone(self, engine, books, order, clock):
        fail_draft_sync(engine, books, order)
        engine.store.update("1042", retry_count=5)
        clock.advance(24 * 3600)

        summary = engine.run_retries()

        assert summary.exhausted == 1
        assert summary.processed == 0

    def test_retry_replays_requested_disposition(self, engine, books, order, clock):
        books.fail_next("POST", "/invoices", status=503)
        engine.sync_record(order, as_draft=False)
        clock.advance(15 * 60)

        engine.run_retries()

        assert engine.store.get("1042").status == SyncStatus.SYNCED

    def test_missing_local_record_skipped(self, engine, clock):
        engine.store.save(SyncRecordState(record_id="9999", status=SyncStatus.FAILED))
        summary = engine.run_retries()
        assert summary.skipped == 1
        assert summary.processed == 0

    def test_manual_mode(self, engine, books, order, clock):
        engine.scheduler.settings = RetrySettings(mode=RetryMode.MANUAL)
        fail_draft_sync(engine, books, order)
        clock.advance(3600)

        summary = engine.run_retries()

        assert summary.skipped_reason == "manual_mode"
        assert engine.store.get("1042").status == SyncStatus.FAILED

    def test_unhealthy_connection_skips_pass(self, engine, books, order, clock):
        fail_draft_sync(engine, books, order)
        clock.advance(15 * 60)
        books.fail_next("GET", "/organizations", status=503)

        summary = engine.run_retries()

        assert summary.skipped_reason == "connection_unhealthy"
        assert engine.store.get("1042").status == SyncStatus.FAILED

    def test_health_result_is_cached(self, engine, books, order, clock):
        engine.run_retries()
        engine.run_retries()
        assert len(books.api_calls("GET", "/organizations")) == 1

        clock.advance(6 * 60)
        engine.run_retries()
        assert len(books.api_calls("GET", "/organizations")) == 2

    def test_batch_size(self, engine, clock):
        engine.scheduler.settings = RetrySettings(batch_size=2)
        for n in range(5):
            engine.store.save(SyncRecordState(record_id=f"missing-{n}", status=SyncStatus.FAILED))
        summary = engine.run_retries()
        assert summary.skipped == 2

    def test_exhausted_records_do_not_fill_batch(self, engine, books, order, clock):
        engine.scheduler.settings = RetrySettings(batch_size=2)
        for n in range(3):
            engine.store.save(SyncRecordState(
                record_id=f"old-{n}",
                status=SyncStatus.FAILED,
                retry_count=5,
                last_attempt_at=clock.now - timedelta(days=30),
            ))
        fail_draft_sync(engine, books, order)
        clock.advance(15 * 60)

        summary = engine.run_retries()

        assert summary.exhausted == 3
        assert summary.succeeded == 1
        assert engine.store.get("1042").status == SyncStatus.DRAFT


class TestSingleFlight:
    def test_concurrent_pass_is_skipped(self, engine, source, clock):
        entered = threading.Event()
        release = threading.Event()

        class SlowOrchestrator:
            def retry_record(self, order):
                entered.set()
                release.wait(5)
                return engine.orchestrator.sync_record(order, as_draft=True, force=True)

        engine.store.save(SyncRecordState(record_id="1042", status=SyncStatus.FAILED))
        scheduler = RetryScheduler(SlowOrchestrator(), engine.store, source, clock=clock)

        worker = threading.Thread(target=scheduler.run)
        worker.start()
        assert entered.wait(5)

        second = scheduler.run()
        release.set()
        worker.join(5)

        assert second.skipped_reason == "already_running"
        assert engine.store.get("1042").status == SyncStatus.DRAFT


@pytest.mark.parametrize("count,minutes", [(0, 15), (3, 120), (7, 1440), (20, 1440)])
def test_backoff_values(count, minutes):
    scheduler = RetryScheduler(None, None, None)
    assert scheduler.backoff(count) == timedelta(minutes=minutes)
