from __future__ import annotations

PENDING = "pending"
CONFIRMED = "confirmed"
COMPLETED = "completed"
FAILED = "failed"
EXPIRED = "expired"
CANCELLED = "cancelled"

ALL = (PENDING, CONFIRMED, COMPLETED, FAILED, EXPIRED, CANCELLED)
TERMINAL = frozenset({COMPLETED, FAILED, EXPIRED, CANCELLED})
# statuses that hold a username
ACTIVE = (PENDING, CONFIRMED, COMPLETED)

# allowed forward moves; cancel is handled separately
TRANSITIONS = {
    PENDING: frozenset({CONFIRMED, FAILED, EXPIRED}),
    CONFIRMED: frozenset({COMPLETED, FAILED, EXPIRED}),
}


def is_terminal(status: str | None) -> bool:
    return status in TERMINAL


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())
