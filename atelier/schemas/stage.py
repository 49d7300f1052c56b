"""
Pipeline stages and the legal moves between them
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class Stage(str, Enum):
    """Stored `status` values, in pipeline order"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    TO_DELIVER = "to_deliver"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def label(self) -> str:
        return STAGE_LABELS[self]


STAGE_LABELS: Dict[Stage, str] = {
    Stage.PENDING: "Pending",
    Stage.IN_PROGRESS: "In Progress",
    Stage.TO_DELIVER: "To Deliver",
    Stage.COMPLETED: "Completed",
    Stage.CANCELLED: "Cancelled",
}

ALLOWED_TRANSITIONS: Dict[Stage, FrozenSet[Stage]] = {
    Stage.PENDING: frozenset([Stage.IN_PROGRESS, Stage.CANCELLED]),
    Stage.IN_PROGRESS: frozenset([Stage.TO_DELIVER]),
    Stage.TO_DELIVER: frozenset([Stage.COMPLETED]),
    Stage.COMPLETED: frozenset(),
    Stage.CANCELLED: frozenset(),
}

# Event kind published to cross-module listeners for each legal move
TRANSITION_EVENTS: Dict[Tuple[Stage, Stage], str] = {
    (Stage.PENDING, Stage.IN_PROGRESS): "accepted",
    (Stage.PENDING, Stage.CANCELLED): "denied",
    (Stage.IN_PROGRESS, Stage.TO_DELIVER): "done",
    (Stage.TO_DELIVER, Stage.COMPLETED): "delivered",
}

EVENT_TRANSITIONS: Dict[str, Tuple[Stage, Stage]] = {kind: edge for edge, kind in TRANSITION_EVENTS.items()}

# Soft operator flag column per stage
CHECKED_COLUMNS: Dict[Stage, str] = {
    Stage.IN_PROGRESS: "production_checked",
    Stage.TO_DELIVER: "logistics_checked",
}


def is_valid_transition(from_stage: Stage, to_stage: Stage) -> bool:
    """True if `to_stage` is a legal successor of `from_stage`"""
    return to_stage in ALLOWED_TRANSITIONS.get(from_stage, frozenset())


def event_kind_for(from_stage: Stage, to_stage: Stage) -> Optional[str]:
    return TRANSITION_EVENTS.get((from_stage, to_stage))


def parse_stage(value) -> Optional[Stage]:
    """Coerce a stored or user-supplied value to a Stage, None if unknown"""
    if isinstance(value, Stage):
        return value
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return Stage(normalized)
    except ValueError:
        return None
