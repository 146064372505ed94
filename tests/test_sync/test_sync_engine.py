"""Tests for the SyncEngine: outbox replay, remapping, pings, scheduling."""

import json
import threading
from unittest.mock import patch

import pytest

from rideshare_tracker.config import Config
from rideshare_tracker.sync.sync_engine import SyncEngine, SyncReport


@pytest.fixture
def engine(repo, outbox, client):
    return SyncEngine(repo, outbox, client)


def _queue_shift_create(outbox, shift):
    return outbox.enqueue("POST", "/v1/shifts", {},
                          {"type": "shift_create", "localId": shift.id})


def _confirmed_shift_and_ride(repo):
    shift = repo.create_shift()
    ride = repo.create_ride(shift.id)
    repo.replace_id("shift", shift.id, "server-1")
    repo.replace_id("ride", ride.id, "server-2")
    return "server-1", "server-2"


class TestReplay:
    def test_empty_cycle(self, engine, server):
        report = engine.perform_sync_cycle()
        assert isinstance(report, SyncReport)
        assert report.processed == 0
        assert server.requests == []
        assert engine.is_online

    def test_shift_create_remaps_and_completes(self, engine, repo, outbox, server):
        shift = repo.create_shift()
        _queue_shift_create(outbox, shift)

        report = engine.perform_sync_cycle()

        assert report.succeeded == 1
        assert outbox.count() == 0
        assert repo.get_shift_by_id(shift.id) is None
        stored = repo.get_shift_by_id("server-1")
        assert stored.synced is True
        assert repo.id_mappings.resolve(shift.id) == "server-1"

    def test_ride_end_rewritten_after_shift_remap(self, engine, repo, outbox, server):
        shift = repo.create_shift()
        ride = repo.create_ride(shift.id)
        repo.end_ride(ride.id, 1800)
        _queue_shift_create(outbox, shift)
        outbox.enqueue("POST", "/v1/rides", {"shift_id": shift.id},
                       {"type": "ride_create", "localId": ride.id,
                        "shiftId": shift.id})
        outbox.enqueue("PATCH", f"/v1/rides/{ride.id}/end", {"gross_cents": 1800},
                       {"type": "ride_end", "rideId": ride.id,
                        "shiftId": shift.id})

        engine.perform_sync_cycle()

        assert server.calls == [
            "POST /v1/shifts",
            "POST /v1/rides",
            "PATCH /v1/rides/server-2/end",
        ]
        assert server.requests[1][2] == {"shift_id": "server-1"}
        assert outbox.count() == 0
        ride_row = repo.get_ride_by_id("server-2")
        assert ride_row.shift_id == "server-1"
        assert ride_row.synced is True

    def test_rewrite_persisted_before_send(self, engine, repo, outbox, server):
        repo.id_mappings.save("shift", "L1", "server-1")
        entry_id = outbox.enqueue("PATCH", "/v1/shifts/L1/end", {},
                                  {"type": "shift_end", "shiftId": "L1"})
        server.status = 503

        engine.perform_sync_cycle()

        assert server.calls == ["PATCH /v1/shifts/server-1/end"]
        entry = outbox.get(entry_id)
        assert entry.url == "/v1/shifts/server-1/end"
        assert entry.meta_dict["shiftId"] == "server-1"
        assert entry.retry_count == 1

    def test_failure_keeps_entry_and_continues(self, engine, repo, outbox, server):
        bad = outbox.enqueue("POST", "/v1/rides/R9/tips", {"tip_cents": 1},
                             {"type": "ride_tip", "rideId": "R9"})
        good = outbox.enqueue("PATCH", "/v1/shifts/S1/end", {},
                              {"type": "shift_end", "shiftId": "S1"})
        server.overrides[("POST", "/v1/rides/R9/tips")] = 500

        report = engine.perform_sync_cycle()

        assert report.succeeded == 1
        assert report.failed == 1
        assert outbox.get(bad).retry_count == 1
        assert outbox.get(good) is None

    def test_single_attempt_per_cycle(self, engine, outbox, server, sleeps):
        outbox.enqueue("POST", "/v1/shifts", {}, {"type": "shift_create",
                                                  "localId": "L1"})
        server.status = 500
        engine.perform_sync_cycle()
        assert len(server.requests) == 1
        assert sleeps == []

    def test_client_error_counts_as_failure(self, engine, outbox, server):
        entry_id = outbox.enqueue("PATCH", "/v1/shifts/S1/end", {},
                                  {"type": "shift_end", "shiftId": "S1"})
        server.status = 404
        engine.perform_sync_cycle()
        assert outbox.get(entry_id).retry_count == 1

    def test_already_confirmed_create_not_resent(self, engine, repo, outbox, server):
        shift = repo.create_shift()
        entry_id = _queue_shift_create(outbox, shift)
        repo.replace_id("shift", shift.id, "server-7")

        report = engine.perform_sync_cycle()

        assert report.skipped == 1
        assert server.requests == []
        assert outbox.get(entry_id) is None

    def test_at_least_once_after_crash_between_send_and_complete(
            self, engine, repo, outbox, server):
        repo.create_shift()
        entry_id = outbox.enqueue("PATCH", "/v1/shifts/S1/end", {},
                                  {"type": "shift_end", "shiftId": "S1"})

        with patch.object(outbox, "mark_complete",
                          side_effect=RuntimeError("process killed")):
            with pytest.raises(RuntimeError):
                engine.perform_sync_cycle()

        assert outbox.get(entry_id) is not None
        engine.perform_sync_cycle()
        assert server.calls == ["PATCH /v1/shifts/S1/end"] * 2
        assert outbox.get(entry_id) is None

    def test_expense_create_keeps_receipt_url(self, engine, repo, outbox, server):
        expense = repo.create_expense("Tolls", 650, receipt_base64="aGk=",
                                      receipt_mime="image/jpeg")
        outbox.enqueue("POST", "/v1/expenses", expense.to_payload(),
                       {"type": "expense_create", "localId": expense.id})

        engine.perform_sync_cycle()

        stored = repo.get_expense_by_id("server-1")
        assert stored.synced is True
        assert stored.receipt_url == "https://files.test/server-1.jpg"
        assert stored.receipt_base64 is None

    def test_create_without_id_left_unsynced(self, engine, repo, outbox,
                                             server, caplog):
        shift = repo.create_shift()
        _queue_shift_create(outbox, shift)
        server.omit_ids = True

        with caplog.at_level("WARNING"):
            report = engine.perform_sync_cycle()

        assert report.succeeded == 1
        assert outbox.count() == 0
        assert repo.get_shift_by_id(shift.id).synced is False
        assert repo.id_mappings.resolve(shift.id) is None
        assert "without returning an id" in caplog.text

    def test_missing_credentials_skips_replay(self, engine, outbox, server, settings):
        def missing():
            from rideshare_tracker.config import ConfigurationError
            raise ConfigurationError("Device token not set")

        settings.get_device_token = missing
        entry_id = outbox.enqueue("POST", "/v1/shifts")
        report = engine.perform_sync_cycle()
        assert server.requests == []
        assert outbox.get(entry_id).retry_count == 0
        assert report.error


class TestPurge:
    def test_exhausted_entry_purged_with_warning(self, engine, outbox, server, caplog):
        entry_id = outbox.enqueue("POST", "/v1/shifts", {},
                                  {"type": "shift_create", "localId": "L1"})
        server.status = 500

        for _ in range(Config.MAX_RETRIES):
            engine.perform_sync_cycle()
        assert outbox.get(entry_id).retry_count == 10

        with caplog.at_level("WARNING"):
            report = engine.perform_sync_cycle()

        assert report.purged == 1
        assert outbox.get(entry_id) is None
        assert "Dropped 1 outbox entries" in caplog.text


class TestPingUpload:
    def test_uploads_batch_with_resolved_ids(self, engine, repo, server):
        shift = repo.create_shift()
        for i in range(3):
            repo.save_ping(shift.id, 40.0 + i, -73.0, 5.0)
        repo.id_mappings.save("shift", shift.id, "server-1")

        report = engine.perform_sync_cycle()

        assert report.pings_uploaded == 3
        method, path, body = server.requests[0]
        assert (method, path) == ("POST", "/v1/location")
        assert body["shift_id"] == "server-1"
        assert "ride_id" not in body
        assert [p["lat"] for p in body["pings"]] == [40.0, 41.0, 42.0]
        assert repo.get_pending_pings() == []

    def test_batch_limited(self, engine, repo, server):
        shift = repo.create_shift()
        repo.replace_id("shift", shift.id, "server-1")
        for i in range(5):
            repo.save_ping("server-1", i, i, 5.0)
        with patch.object(Config, "PING_BATCH_SIZE", 2):
            engine.perform_sync_cycle()
        assert len(server.requests[0][2]["pings"]) == 2
        assert len(repo.get_pending_pings()) == 3

    def test_one_batch_per_cycle(self, engine, repo, server):
        shift, ride = _confirmed_shift_and_ride(repo)
        repo.save_ping(shift, 1, 1, 5.0)
        repo.save_ping(shift, 2, 2, 5.0, ride_id=ride)

        report = engine.perform_sync_cycle()

        assert report.pings_uploaded == 1
        assert len(repo.get_pending_pings()) == 1

    def test_flush_uploads_every_pair(self, engine, repo, server):
        shift, ride = _confirmed_shift_and_ride(repo)
        repo.save_ping(shift, 1, 1, 5.0)
        repo.save_ping(shift, 2, 2, 5.0, ride_id=ride)
        repo.save_ping(shift, 3, 3, 5.0)

        report = engine.perform_sync_cycle(flush=True)

        assert report.pings_uploaded == 3
        assert server.calls == ["POST /v1/location", "POST /v1/location"]
        assert repo.get_pending_pings() == []

    def test_unconfirmed_shift_pings_wait(self, engine, repo, server):
        shift = repo.create_shift()
        repo.save_ping(shift.id, 1, 1, 5.0)

        report = engine.perform_sync_cycle(flush=True)

        assert report.pings_uploaded == 0
        assert server.requests == []
        assert len(repo.get_pending_pings()) == 1

    def test_rejected_batches_set_aside(self, engine, repo,
                                         server, caplog):
        shift, ride = _confirmed_shift_and_ride(repo)
        repo.save_ping(shift, 1, 1, 5.0)
        repo.save_ping(shift, 2, 2, 5.0, ride_id=ride)
        server.overrides[("POST", "/v1/location")] = 409

        with caplog.at_level("WARNING"):
            report = engine.perform_sync_cycle()

        assert report.pings_rejected == 2
        assert report.pings_uploaded == 0
        assert "set aside" in caplog.text
        assert server.calls == ["POST /v1/location", "POST /v1/location"]
        assert repo.get_pending_ping_batch(max_attempts=Config.MAX_RETRIES) == []

    def test_rejected_pair_does_not_block_later_shift(self, engine, repo,
                                                      server):
        old = repo.create_shift()
        repo.replace_id("shift", old.id, "server-1")
        repo.save_ping("server-1", 1, 1, 5.0)
        new = repo.create_shift()
        repo.replace_id("shift", new.id, "server-2")
        repo.save_ping("server-2", 2, 2, 5.0)
        server.ended_shifts.add("server-1")

        report = engine.perform_sync_cycle()

        assert report.pings_rejected == 1
        assert report.pings_uploaded == 1
        assert [p.shift_id for p in repo.get_pending_pings()] == ["server-1"]

    def test_server_error_counts_attempt(self, engine, repo, server):
        shift, _ = _confirmed_shift_and_ride(repo)
        repo.save_ping(shift, 1, 1, 5.0)
        server.status = 503

        report = engine.perform_sync_cycle()

        assert report.pings_uploaded == 0
        assert repo.get_pending_pings()[0].upload_attempts == 1

    def test_failed_upload_keeps_pings(self, engine, repo, server):
        shift, _ = _confirmed_shift_and_ride(repo)
        repo.save_ping(shift, 1, 1, 5.0)
        server.offline = True

        report = engine.perform_sync_cycle(flush=True)

        assert report.pings_uploaded == 0
        pending = repo.get_pending_pings()
        assert len(pending) == 1
        assert pending[0].upload_attempts == 0
        assert engine.is_online is False


class TestReentrancy:
    def test_concurrent_cycle_is_skipped(self, engine):
        engine._lock.acquire()
        try:
            assert engine.perform_sync_cycle() is None
        finally:
            engine._lock.release()

    def test_wait_blocks_until_free(self, engine):
        engine._lock.acquire()
        results = []
        waiter = threading.Thread(
            target=lambda: results.append(engine.perform_sync_cycle(wait=True))
        )
        waiter.start()
        waiter.join(0.2)
        assert waiter.is_alive()
        engine._lock.release()
        waiter.join(5)
        assert isinstance(results[0], SyncReport)

    def test_no_double_send_from_parallel_cycles(self, engine, outbox, server):
        for i in range(5):
            outbox.enqueue("PATCH", f"/v1/shifts/S{i}/end", {},
                           {"type": "shift_end", "shiftId": f"S{i}"})
        threads = [
            threading.Thread(target=engine.perform_sync_cycle, kwargs={"wait": True})
            for _ in range(3)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)
        assert sorted(server.calls) == sorted(
            f"PATCH /v1/shifts/S{i}/end" for i in range(5)
        )


class TestLifecycle:
    def test_start_runs_cycle_and_timer(self, qtbot, engine, outbox):
        outbox.enqueue("PATCH", "/v1/shifts/S1/end", {},
                       {"type": "shift_end", "shiftId": "S1"})
        with qtbot.waitSignal(engine.sync_finished, timeout=5000) as blocker:
            engine.start()
        assert engine.is_running
        assert blocker.args[0].succeeded == 1
        assert engine.last_report is blocker.args[0]

        engine.stop()
        assert not engine.is_running
        engine.wait_for_worker()

    def test_start_is_idempotent(self, qtbot, engine):
        engine.start()
        timer = engine._timer
        engine.start()
        assert engine._timer is timer
        engine.stop()
        engine.wait_for_worker()

    def test_timer_uses_configured_interval(self, qtbot, engine):
        with patch.object(Config, "SYNC_INTERVAL_SECONDS", 12):
            engine.start()
        assert engine._timer.interval() == 12000
        engine.stop()
        engine.wait_for_worker()

    def test_independent_instances(self, qtbot, repo, outbox, client):
        first = SyncEngine(repo, outbox, client)
        second = SyncEngine(repo, outbox, client)
        first.start()
        assert first.is_running
        assert not second.is_running
        first.stop()
        first.wait_for_worker()

    def test_trigger_sync_emits_report(self, qtbot, engine):
        with qtbot.waitSignal(engine.sync_finished, timeout=5000):
            engine.trigger_sync()
        engine.wait_for_worker()


def test_report_body_is_json_serializable_payload(repo, outbox, client, server):
    """Entries queued with JSON string bodies replay unchanged."""
    outbox.enqueue("POST", "/v1/rides/S1/tips", json.dumps({"tip_cents": 250}),
                   {"type": "ride_tip", "rideId": "S1"})
    SyncEngine(repo, outbox, client).perform_sync_cycle()
    assert server.requests[0][2] == {"tip_cents": 250}
