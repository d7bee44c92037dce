from __future__ import annotations

from enum import Enum
from typing import Dict, List


class ConnectionPhase(str, Enum):
    READY = "ready"
    GENERATING = "generating"


# A connection only ever leaves GENERATING by returning to READY; disconnect
# is handled outside the machine.
PHASE_TRANSITIONS: Dict[ConnectionPhase, List[ConnectionPhase]] = {
    ConnectionPhase.READY: [ConnectionPhase.GENERATING],
    ConnectionPhase.GENERATING: [ConnectionPhase.READY],
}


def is_valid_transition(current: ConnectionPhase, target: ConnectionPhase) -> bool:
    return target in PHASE_TRANSITIONS.get(current, [])


class InvalidTransition(RuntimeError):
    def __init__(self, current: ConnectionPhase, target: ConnectionPhase) -> None:
        super().__init__(f"Invalid connection transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def transition(current: ConnectionPhase, target: ConnectionPhase) -> ConnectionPhase:
    if not is_valid_transition(current, target):
        raise InvalidTransition(current, target)
    return target
