"""Standard rotation state machine.

States and events are immutable tagged unions; :func:`transition` is a pure
function from ``(state, event)`` to the next state. All side effects live in
:mod:`keywarden.rotation.orchestrator`, which performs the effect for the
current state and feeds the resulting event back in here.

::

    STABLE -> GENERATING -> DUAL_PUBLISHED -> AWAITING_PROPAGATION
           -> SWITCHED -> MONITORING -> STABLE

Any state before SWITCHED may move to ROLLBACK, which resolves to STABLE on
the original key. Nothing at or after SWITCHED can roll back.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from ..errors import InvalidTransitionError
from ..models import SigningSecret


class RotationPhase(str, Enum):
    STABLE = "STABLE"
    GENERATING = "GENERATING"
    DUAL_PUBLISHED = "DUAL_PUBLISHED"
    AWAITING_PROPAGATION = "AWAITING_PROPAGATION"
    SWITCHED = "SWITCHED"
    MONITORING = "MONITORING"
    ROLLBACK = "ROLLBACK"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ----------------------------------------------------------------------
# States
class Stable(_Frozen):
    phase: Literal[RotationPhase.STABLE] = RotationPhase.STABLE
    active_kid: str


class Generating(_Frozen):
    phase: Literal[RotationPhase.GENERATING] = RotationPhase.GENERATING
    old_kid: str


class DualPublished(_Frozen):
    phase: Literal[RotationPhase.DUAL_PUBLISHED] = RotationPhase.DUAL_PUBLISHED
    old_kid: str
    new_kid: str


class AwaitingPropagation(_Frozen):
    phase: Literal[RotationPhase.AWAITING_PROPAGATION] = RotationPhase.AWAITING_PROPAGATION
    old_kid: str
    new_kid: str
    verified: bool = False
    window_elapsed: bool = False
    polls: int = 0


class Switched(_Frozen):
    phase: Literal[RotationPhase.SWITCHED] = RotationPhase.SWITCHED
    old_kid: str
    new_kid: str
    switched_at: datetime


class Monitoring(_Frozen):
    phase: Literal[RotationPhase.MONITORING] = RotationPhase.MONITORING
    old_kid: str
    new_kid: str
    switched_at: datetime
    breaches: int = 0


class RollingBack(_Frozen):
    phase: Literal[RotationPhase.ROLLBACK] = RotationPhase.ROLLBACK
    old_kid: str
    new_kid: Optional[str] = None
    reason: str


RotationState = Union[
    Stable, Generating, DualPublished, AwaitingPropagation, Switched, Monitoring, RollingBack
]


# ----------------------------------------------------------------------
# Events
class Begin(_Frozen):
    kind: Literal["begin"] = "begin"


class DualPublishCommitted(_Frozen):
    kind: Literal["dual_publish_committed"] = "dual_publish_committed"
    new_kid: str


class GateOpened(_Frozen):
    kind: Literal["gate_opened"] = "gate_opened"


class PropagationObserved(_Frozen):
    kind: Literal["propagation_observed"] = "propagation_observed"
    polls: int


class PropagationMissed(_Frozen):
    kind: Literal["propagation_missed"] = "propagation_missed"
    polls: int


class PropagationWindowElapsed(_Frozen):
    kind: Literal["propagation_window_elapsed"] = "propagation_window_elapsed"


class SwitchCommitted(_Frozen):
    kind: Literal["switch_committed"] = "switch_committed"
    at: datetime


class MonitoringStarted(_Frozen):
    kind: Literal["monitoring_started"] = "monitoring_started"


class ThresholdBreached(_Frozen):
    kind: Literal["threshold_breached"] = "threshold_breached"
    error_rate: float


class Retired(_Frozen):
    kind: Literal["retired"] = "retired"


class RollbackRequested(_Frozen):
    kind: Literal["rollback_requested"] = "rollback_requested"
    reason: str


class RollbackCompleted(_Frozen):
    kind: Literal["rollback_completed"] = "rollback_completed"


RotationEvent = Union[
    Begin,
    DualPublishCommitted,
    GateOpened,
    PropagationObserved,
    PropagationMissed,
    PropagationWindowElapsed,
    SwitchCommitted,
    MonitoringStarted,
    ThresholdBreached,
    Retired,
    RollbackRequested,
    RollbackCompleted,
]

_ROLLBACK_PHASES = {
    RotationPhase.GENERATING,
    RotationPhase.DUAL_PUBLISHED,
    RotationPhase.AWAITING_PROPAGATION,
}


def can_rollback(state: RotationState) -> bool:
    """Only states before SWITCHED may roll back."""
    return state.phase in _ROLLBACK_PHASES


def _invalid(state: RotationState, event: RotationEvent) -> InvalidTransitionError:
    return InvalidTransitionError(
        f"Event {event.kind} is not valid in state {state.phase.value}",
        context={"state": state.phase.value, "event": event.kind},
    )


def transition(state: RotationState, event: RotationEvent) -> RotationState:
    """Return the state that follows ``state`` after ``event``."""
    if isinstance(event, RollbackRequested):
        if not can_rollback(state):
            raise _invalid(state, event)
        return RollingBack(
            old_kid=state.old_kid,
            new_kid=getattr(state, "new_kid", None),
            reason=event.reason,
        )

    if isinstance(state, Stable) and isinstance(event, Begin):
        return Generating(old_kid=state.active_kid)

    if isinstance(state, Generating) and isinstance(event, DualPublishCommitted):
        return DualPublished(old_kid=state.old_kid, new_kid=event.new_kid)

    if isinstance(state, DualPublished) and isinstance(event, GateOpened):
        return AwaitingPropagation(old_kid=state.old_kid, new_kid=state.new_kid)

    if isinstance(state, AwaitingPropagation):
        if isinstance(event, PropagationObserved) and not state.verified:
            return state.model_copy(update={"verified": True, "polls": event.polls})
        if isinstance(event, PropagationMissed) and not state.verified:
            return RollingBack(
                old_kid=state.old_kid,
                new_kid=state.new_kid,
                reason=f"{state.new_kid} not visible in JWKS after {event.polls} polls",
            )
        if isinstance(event, PropagationWindowElapsed) and state.verified:
            return state.model_copy(update={"window_elapsed": True})
        if isinstance(event, SwitchCommitted) and state.verified and state.window_elapsed:
            return Switched(old_kid=state.old_kid, new_kid=state.new_kid, switched_at=event.at)

    if isinstance(state, Switched) and isinstance(event, MonitoringStarted):
        return Monitoring(old_kid=state.old_kid, new_kid=state.new_kid, switched_at=state.switched_at)

    if isinstance(state, Monitoring):
        if isinstance(event, ThresholdBreached):
            return state.model_copy(update={"breaches": state.breaches + 1})
        if isinstance(event, Retired):
            return Stable(active_kid=state.new_kid)

    if isinstance(state, RollingBack) and isinstance(event, RollbackCompleted):
        return Stable(active_kid=state.old_kid)

    raise _invalid(state, event)


def state_from_secret(secret: SigningSecret) -> RotationState:
    """Reconstruct where a rotation stands from the persisted secret."""
    if secret.pending_kid:
        return DualPublished(old_kid=secret.active_kid, new_kid=secret.pending_kid)
    return Stable(active_kid=secret.active_kid)
