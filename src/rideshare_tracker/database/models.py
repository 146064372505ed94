"""Data models for the database layer."""

import json
from dataclasses import dataclass
from typing import Optional


@dataclass
class Shift:
    id: str = ""  # local UUID until remapped to the server id
    started_at: str = ""
    ended_at: Optional[str] = None
    earnings_cents: int = 0
    tips_cents: int = 0
    distance_miles: float = 0.0
    ride_count: int = 0
    synced: bool = False  # local-only

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    @property
    def total_cents(self) -> int:
        """Fares plus tips."""
        return self.earnings_cents + self.tips_cents


@dataclass
class Ride:
    id: str = ""
    shift_id: str = ""
    status: str = "en_route"  # en_route, in_progress, completed
    started_at: str = ""
    pickup_at: Optional[str] = None
    dropoff_at: Optional[str] = None
    ended_at: Optional[str] = None
    gross_cents: int = 0
    tip_cents: int = 0
    distance_miles: float = 0.0
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    dropoff_lat: Optional[float] = None
    dropoff_lng: Optional[float] = None
    synced: bool = False

    @property
    def is_active(self) -> bool:
        return self.status != "completed"


@dataclass
class LocationPing:
    id: Optional[int] = None  # local autoincrement, never remapped
    shift_id: str = ""
    ride_id: Optional[str] = None
    ts: str = ""
    lat: float = 0.0
    lng: float = 0.0
    speed_mps: Optional[float] = None
    heading_deg: Optional[float] = None
    accuracy_m: float = 0.0
    source: str = "gps"  # gps, network, fused
    synced: bool = False
    upload_attempts: int = 0

    def to_payload(self) -> dict:
        """Wire format for one ping inside a location batch."""
        payload = {
            "ts": self.ts,
            "lat": self.lat,
            "lng": self.lng,
            "accuracy_m": self.accuracy_m,
            "source": self.source,
        }
        if self.speed_mps is not None:
            payload["speed_mps"] = self.speed_mps
        if self.heading_deg is not None:
            payload["heading_deg"] = self.heading_deg
        return payload


@dataclass
class Expense:
    id: str = ""
    ts: str = ""
    category: str = ""
    amount_cents: int = 0
    note: Optional[str] = None
    receipt_base64: Optional[str] = None  # dropped once synced
    receipt_mime: Optional[str] = None
    receipt_url: Optional[str] = None
    synced: bool = False

    @property
    def has_receipt(self) -> bool:
        return bool(self.receipt_url or self.receipt_base64)

    def to_payload(self) -> dict:
        """Body for POST /v1/expenses."""
        payload = {
            "ts": self.ts,
            "category": self.category,
            "amount_cents": self.amount_cents,
        }
        if self.note:
            payload["note"] = self.note
        if self.receipt_base64:
            payload["receipt_base64"] = self.receipt_base64
            payload["receipt_mime"] = self.receipt_mime
        return payload


@dataclass
class IdMapping:
    local_id: str = ""
    server_id: str = ""
    entity: str = ""  # shift, ride, expense


@dataclass
class PendingRequest:
    id: Optional[int] = None
    method: str = "POST"  # POST, PATCH
    url: str = ""
    body: str = "{}"  # JSON text
    meta: Optional[str] = None  # JSON text: {type, localId?, shiftId?, rideId?}
    retry_count: int = 0
    created_at: str = ""
    last_attempt_at: Optional[str] = None

    @property
    def meta_dict(self) -> Optional[dict]:
        """Parsed meta, or None when absent or not a JSON object."""
        if not self.meta:
            return None
        try:
            parsed = json.loads(self.meta)
        except (json.JSONDecodeError, TypeError):
            return None
        return parsed if isinstance(parsed, dict) else None


@dataclass
class ShiftStats:
    rides: int = 0
    earnings: int = 0  # cents
    tips: int = 0  # cents
    duration: int = 0  # seconds
    rate_per_hour: float = 0.0  # dollars
    distance: float = 0.0  # miles
