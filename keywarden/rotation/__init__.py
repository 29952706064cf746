from .orchestrator import RotationOrchestrator
from .state import (
    AwaitingPropagation,
    DualPublished,
    Generating,
    Monitoring,
    RollingBack,
    RotationEvent,
    RotationPhase,
    RotationState,
    Stable,
    Switched,
    can_rollback,
    state_from_secret,
    transition,
)

__all__ = [
    "RotationOrchestrator",
    "RotationPhase",
    "RotationState",
    "RotationEvent",
    "Stable",
    "Generating",
    "DualPublished",
    "AwaitingPropagation",
    "Switched",
    "Monitoring",
    "RollingBack",
    "can_rollback",
    "state_from_secret",
    "transition",
]
