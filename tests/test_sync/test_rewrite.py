"""Tests for structured identifier rewriting of outbox entries."""

import json

from rideshare_tracker.database.models import PendingRequest
from rideshare_tracker.sync.sync_engine import rewrite_entry


def _entry(url, body, meta):
    return PendingRequest(
        id=1, method="PATCH", url=url, body=json.dumps(body),
        meta=json.dumps(meta),
    )


class TestRewriteEntry:
    def test_rewrites_path_body_and_meta(self):
        entry = _entry(
            "/v1/rides/L-ride/end",
            {"shift_id": "L-shift", "gross_cents": 100},
            {"type": "ride_end", "rideId": "L-ride", "shiftId": "L-shift"},
        )
        url, body, meta = rewrite_entry(
            entry, {"L-ride": "server-r", "L-shift": "server-s"}
        )
        assert url == "/v1/rides/server-r/end"
        assert json.loads(body) == {"shift_id": "server-s", "gross_cents": 100}
        assert json.loads(meta) == {
            "type": "ride_end", "rideId": "server-r", "shiftId": "server-s",
        }

    def test_no_mappings_returns_same_strings(self):
        entry = _entry("/v1/shifts/L1/end", {}, {"type": "shift_end",
                                                 "shiftId": "L1"})
        assert rewrite_entry(entry, {}) == (entry.url, entry.body, entry.meta)

    def test_second_pass_is_byte_identical(self):
        entry = _entry(
            "/v1/shifts/L1/end", {}, {"type": "shift_end", "shiftId": "L1"}
        )
        mappings = {"L1": "server-1"}
        url, body, meta = rewrite_entry(entry, mappings)
        rewritten = PendingRequest(id=1, method="PATCH", url=url, body=body,
                                   meta=meta)
        assert rewrite_entry(rewritten, mappings) == (url, body, meta)

    def test_substrings_are_left_alone(self):
        entry = _entry(
            "/v1/rides/abc-123/end",
            {"note": "abc", "shift_id": "abc-1234"},
            {"type": "ride_end", "rideId": "abc-123"},
        )
        url, body, _ = rewrite_entry(entry, {"abc": "server-x"})
        assert url == "/v1/rides/abc-123/end"
        assert body == entry.body

    def test_only_declared_body_fields(self):
        entry = _entry(
            "/v1/rides", {"shift_id": "L1", "pickup_note": "L1"},
            {"type": "ride_create", "localId": "R1", "shiftId": "L1"},
        )
        _, body, _ = rewrite_entry(entry, {"L1": "server-1"})
        assert json.loads(body) == {"shift_id": "server-1", "pickup_note": "L1"}

    def test_absolute_url_keeps_host(self):
        entry = _entry(
            "https://api.test/v1/shifts/L1/end", {},
            {"type": "shift_end", "shiftId": "L1"},
        )
        url, _, _ = rewrite_entry(entry, {"L1": "server-1"})
        assert url == "https://api.test/v1/shifts/server-1/end"

    def test_invalid_body_untouched(self):
        entry = PendingRequest(
            id=1, method="POST", url="/v1/rides/L1/tips", body="not json",
            meta='{"type": "ride_tip", "rideId": "L1"}',
        )
        url, body, _ = rewrite_entry(entry, {"L1": "server-1"})
        assert url == "/v1/rides/server-1/tips"
        assert body == "not json"
