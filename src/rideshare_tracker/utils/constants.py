"""Application-wide constants."""

APP_NAME = "Rideshare Tracker"
APP_VERSION = "1.0.0"
APP_ORGANIZATION = "Rideshare Tracker"


class TrackerState:
    """States of the shift/ride state machine."""

    IDLE = "idle"
    SHIFT_ACTIVE = "shift_active"
    EN_ROUTE = "en_route"
    IN_RIDE = "in_ride"
    SHIFT_ENDED = "shift_ended"


TRACKER_STATES = [
    TrackerState.IDLE,
    TrackerState.SHIFT_ACTIVE,
    TrackerState.EN_ROUTE,
    TrackerState.IN_RIDE,
    TrackerState.SHIFT_ENDED,
]

# States in which a shift row exists in memory (tips are allowed here)
SHIFT_STATES = [
    TrackerState.SHIFT_ACTIVE,
    TrackerState.EN_ROUTE,
    TrackerState.IN_RIDE,
    TrackerState.SHIFT_ENDED,
]

# Ride statuses (stored in rides.status)
RIDE_STATUS_EN_ROUTE = "en_route"
RIDE_STATUS_IN_PROGRESS = "in_progress"
RIDE_STATUS_COMPLETED = "completed"
RIDE_STATUSES = [
    RIDE_STATUS_EN_ROUTE,
    RIDE_STATUS_IN_PROGRESS,
    RIDE_STATUS_COMPLETED,
]

# Location ping sources
PING_SOURCES = ["gps", "network", "fused"]

# Entity kinds recorded in id_mappings.entity
ENTITY_SHIFT = "shift"
ENTITY_RIDE = "ride"
ENTITY_EXPENSE = "expense"
ENTITY_KINDS = [ENTITY_SHIFT, ENTITY_RIDE, ENTITY_EXPENSE]

# Outbox meta "type" tags
META_SHIFT_CREATE = "shift_create"
META_SHIFT_END = "shift_end"
META_RIDE_CREATE = "ride_create"
META_RIDE_END = "ride_end"
META_RIDE_TIP = "ride_tip"
META_EXPENSE_CREATE = "expense_create"

# Create-type tags map to the entity whose local id they carry
CREATE_META_ENTITIES = {
    META_SHIFT_CREATE: ENTITY_SHIFT,
    META_RIDE_CREATE: ENTITY_RIDE,
    META_EXPENSE_CREATE: ENTITY_EXPENSE,
}

# Outbox methods
OUTBOX_METHODS = ["POST", "PATCH"]

# Meta id slots and the request body fields they may appear in
META_ID_SLOTS = ["shiftId", "rideId", "localId"]
BODY_ID_FIELDS = ["shift_id", "ride_id"]

# Expense categories offered by the expense form
EXPENSE_CATEGORIES = [
    "Fuel",
    "Charging",
    "Maintenance",
    "Car Wash",
    "Tolls",
    "Parking",
    "Food",
    "Phone",
    "Insurance",
    "Other",
]

# Location tracking modes and their provider configuration
TRACKING_MODE_WAITING = "waiting"
TRACKING_MODE_RIDE = "ride"
TRACKING_CONFIG = {
    TRACKING_MODE_WAITING: {
        "desired_accuracy": "medium",
        "distance_filter_m": 15,
        "interval_ms": 15000,
        "fastest_interval_ms": 10000,
        "notification_title": "Shift active",
    },
    TRACKING_MODE_RIDE: {
        "desired_accuracy": "high",
        "distance_filter_m": 5,
        "interval_ms": 4000,
        "fastest_interval_ms": 3000,
        "notification_title": "Ride in progress",
    },
}
