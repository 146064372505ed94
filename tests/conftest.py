"""Shared test fixtures."""

import json
import os
import re
import threading

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

import httpx
import pytest

from rideshare_tracker.api.client import ApiClient
from rideshare_tracker.database.connection import DatabaseConnection
from rideshare_tracker.database.outbox import Outbox
from rideshare_tracker.database.repository import Repository
from rideshare_tracker.database.schema import initialize_database

_CREATE_PATHS = ("/v1/shifts", "/v1/rides", "/v1/expenses")


class FakeServer:
    """httpx.MockTransport handler standing in for the tracker server.

    Creates answer with sequential ids ``server-1``, ``server-2``...
    Set ``offline`` to refuse connections, ``status`` to fail every
    request, or ``overrides[(method, path)]`` to fail one endpoint. Pings
    for a shift that was ended get a 409, as the real server answers.
    Set ``gate`` to an Event to hold every request until it is set, and
    ``omit_ids`` to accept creates without returning an id.
    """

    def __init__(self):
        self.requests: list[tuple[str, str, dict]] = []
        self.headers: list[httpx.Headers] = []
        self.offline = False
        self.status = 200
        self.overrides: dict[tuple[str, str], int] = {}
        self.next_id = 1
        self.ended_shifts: set[str] = set()
        self.gate: threading.Event = None
        self.omit_ids = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        path = request.url.path
        self.requests.append((request.method, path, body))
        self.headers.append(request.headers)
        if self.gate is not None:
            self.gate.wait(5)

        if self.offline:
            raise httpx.ConnectError("Network unreachable", request=request)
        status = self.overrides.get((request.method, path), self.status)
        if status >= 300:
            return httpx.Response(status, text="server says no")

        ended = re.fullmatch(r"/v1/shifts/([^/]+)/end", path)
        if ended:
            self.ended_shifts.add(ended.group(1))
        if path == "/v1/location" and body.get("shift_id") in self.ended_shifts:
            return httpx.Response(409, text="shift already ended")

        if request.method == "POST" and path in _CREATE_PATHS:
            if self.omit_ids:
                return httpx.Response(201, json={})
            server_id = f"server-{self.next_id}"
            self.next_id += 1
            payload = {"id": server_id}
            if path == "/v1/expenses" and body.get("receipt_base64"):
                payload["receipt_url"] = f"https://files.test/{server_id}.jpg"
            return httpx.Response(201, json=payload)
        return httpx.Response(200, json={"ok": True})

    @property
    def calls(self) -> list[str]:
        return [f"{method} {path}" for method, path, _ in self.requests]


class FakeSettings:
    base_url = "https://api.test"
    device_token = "device-token"

    def get_api_base_url(self):
        return self.base_url

    def get_device_token(self):
        return self.device_token


@pytest.fixture(autouse=True)
def isolate_settings(tmp_path, monkeypatch):
    """Keep Config away from the real settings file and environment."""
    import rideshare_tracker.config as config_mod
    monkeypatch.setattr(config_mod, "_SETTINGS_FILE", tmp_path / "settings.json")
    monkeypatch.delenv("API_BASE_URL", raising=False)
    monkeypatch.delenv("DEVICE_TOKEN", raising=False)


@pytest.fixture
def db_path(tmp_path):
    """Provide a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def db(db_path):
    """Provide an initialized database connection."""
    conn = DatabaseConnection(db_path)
    initialize_database(conn)
    return conn


@pytest.fixture
def repo(db):
    """Provide a repository with an initialized database."""
    return Repository(db)


@pytest.fixture
def outbox(db):
    return Outbox(db)


@pytest.fixture
def id_map(repo):
    return repo.id_mappings


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def settings():
    return FakeSettings()


@pytest.fixture
def sleeps():
    """Delays requested by the API client, instead of real sleeping."""
    return []


@pytest.fixture
def client(settings, server, sleeps):
    return ApiClient(
        settings=settings,
        transport=httpx.MockTransport(server),
        sleep=sleeps.append,
    )
