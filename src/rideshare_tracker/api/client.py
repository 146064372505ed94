"""HTTP client for the Rideshare Tracker server.

Every request reads the base URL and device token fresh from the settings
store, so a re-pair or server change applies without a restart.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

from rideshare_tracker.config import Config, ConfigurationError

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Base exception for remote API calls."""


class ApiConfigurationError(ApiError):
    """Server URL or device token is not configured."""


class ApiConnectionError(ApiError):
    """The server could not be reached (DNS, refused, timeout)."""


class ApiHTTPError(ApiError):
    """The server answered with a non-2xx status."""

    def __init__(self, status_code: int, detail: str = ""):
        message = f"HTTP {status_code}"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class ApiClientError(ApiHTTPError):
    """HTTP 4xx: the request is malformed or unauthorized; never retried."""


class ApiServerError(ApiHTTPError):
    """HTTP 5xx (or any other non-2xx, non-4xx status)."""


@dataclass
class ApiCall:
    """A request description that can be sent now or queued for later."""

    method: str
    path: str
    body: dict = field(default_factory=dict)


def _compact(values: dict) -> dict:
    """Drop unset optional fields, as the server schemas expect."""
    return {k: v for k, v in values.items() if v is not None}


# ── Request builders ────────────────────────────────────────────

def start_shift_call() -> ApiCall:
    return ApiCall("POST", "/v1/shifts", {})


def end_shift_call(shift_id: str) -> ApiCall:
    return ApiCall("PATCH", f"/v1/shifts/{shift_id}/end", {})


def start_ride_call(shift_id: str, pickup_lat: float = None,
                    pickup_lng: float = None) -> ApiCall:
    return ApiCall("POST", "/v1/rides", _compact({
        "shift_id": shift_id,
        "pickup_lat": pickup_lat,
        "pickup_lng": pickup_lng,
    }))


def end_ride_call(ride_id: str, gross_cents: int, dropoff_lat: float = None,
                  dropoff_lng: float = None,
                  distance_miles: float = None) -> ApiCall:
    return ApiCall("PATCH", f"/v1/rides/{ride_id}/end", _compact({
        "gross_cents": gross_cents,
        "dropoff_lat": dropoff_lat,
        "dropoff_lng": dropoff_lng,
        "distance_miles": distance_miles,
    }))


def add_tip_call(ride_id: str, tip_cents: int) -> ApiCall:
    return ApiCall("POST", f"/v1/rides/{ride_id}/tips", {"tip_cents": tip_cents})


def location_batch_call(shift_id: str, ride_id: Optional[str],
                        pings: list[dict]) -> ApiCall:
    return ApiCall("POST", "/v1/location", _compact({
        "shift_id": shift_id,
        "ride_id": ride_id,
        "pings": pings,
    }))


def create_expense_call(payload: dict) -> ApiCall:
    return ApiCall("POST", "/v1/expenses", _compact(payload))


class ApiClient:
    """Authenticated request primitive with bounded exponential backoff.

    Parameters
    ----------
    settings:
        Object exposing ``get_api_base_url()`` and ``get_device_token()``.
        Defaults to :class:`Config`, which re-reads settings.json.
    transport:
        Optional ``httpx`` transport (tests pass ``httpx.MockTransport``).
    sleep:
        Delay function used between attempts.
    """

    def __init__(self, settings=None, transport: httpx.BaseTransport = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.settings = settings or Config
        self._transport = transport
        self._sleep = sleep

    def credentials(self) -> tuple[str, str]:
        """Current (base_url, device_token), read fresh."""
        try:
            return self.settings.get_api_base_url(), self.settings.get_device_token()
        except ConfigurationError as e:
            raise ApiConfigurationError(str(e)) from e

    def request(self, method: str, path: str, body=None,
                retries: int = None) -> dict:
        """Send a request and return the decoded JSON object.

        ``body`` may be a dict or an already-serialized JSON string.
        Retries up to ``retries`` attempts (default Config.API_MAX_ATTEMPTS)
        on connection errors and 5xx, sleeping 1s, 2s, 4s... in between.
        4xx raises immediately. A 2xx without a JSON body yields ``{}``.
        """
        base_url, token = self.credentials()
        url = path if path.startswith(("http://", "https://")) else f"{base_url}{path}"
        attempts = max(1, retries or Config.API_MAX_ATTEMPTS)

        last_error: Optional[ApiError] = None
        for attempt in range(attempts):
            try:
                return self._send(method, url, token, body)
            except ApiClientError:
                raise
            except ApiError as e:
                last_error = e
                if attempt < attempts - 1:
                    delay = Config.API_BACKOFF_SECONDS * (2 ** attempt)
                    logger.debug(
                        "%s %s failed (%s); retrying in %.1fs",
                        method, path, e, delay,
                    )
                    self._sleep(delay)
        raise last_error

    def send(self, call: ApiCall, retries: int = None) -> dict:
        return self.request(call.method, call.path, call.body, retries=retries)

    def _send(self, method: str, url: str, token: str, body) -> dict:
        if body is None:
            content = None
        elif isinstance(body, str):
            content = body
        else:
            content = json.dumps(body)

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        }
        try:
            with httpx.Client(transport=self._transport,
                              timeout=Config.API_TIMEOUT) as client:
                response = client.request(
                    method, url, headers=headers, content=content
                )
        except httpx.HTTPError as e:
            raise ApiConnectionError(str(e) or e.__class__.__name__) from e

        if response.is_success:
            content_type = response.headers.get("content-type", "")
            if "application/json" not in content_type:
                return {}
            try:
                data = response.json()
            except ValueError:
                return {}
            return data if isinstance(data, dict) else {"data": data}

        if 400 <= response.status_code < 500:
            raise ApiClientError(response.status_code, response.text)
        raise ApiServerError(response.status_code, response.text)

    # ── Endpoints ───────────────────────────────────────────────

    def start_shift(self) -> dict:
        return self.send(start_shift_call())

    def end_shift(self, shift_id: str) -> dict:
        return self.send(end_shift_call(shift_id))

    def start_ride(self, shift_id: str, pickup_lat: float = None,
                   pickup_lng: float = None) -> dict:
        return self.send(start_ride_call(shift_id, pickup_lat, pickup_lng))

    def end_ride(self, ride_id: str, gross_cents: int,
                 dropoff_lat: float = None, dropoff_lng: float = None,
                 distance_miles: float = None) -> dict:
        return self.send(end_ride_call(
            ride_id, gross_cents, dropoff_lat, dropoff_lng, distance_miles
        ))

    def add_tip(self, ride_id: str, tip_cents: int) -> dict:
        return self.send(add_tip_call(ride_id, tip_cents))

    def upload_location_batch(self, shift_id: str, ride_id: Optional[str],
                              pings: list[dict]) -> dict:
        return self.send(location_batch_call(shift_id, ride_id, pings))

    def create_expense(self, payload: dict) -> dict:
        return self.send(create_expense_call(payload))
