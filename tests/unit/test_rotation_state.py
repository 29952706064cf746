"""The rotation transition function is pure, so every path is tested without I/O."""

from datetime import datetime, timezone

import pytest

from keywarden.errors import InvalidTransitionError
from keywarden.keys import KeyGenerator
from keywarden.models import SigningSecret
from keywarden.rotation.state import (
    AwaitingPropagation,
    Begin,
    DualPublished,
    DualPublishCommitted,
    GateOpened,
    Generating,
    Monitoring,
    MonitoringStarted,
    PropagationMissed,
    PropagationObserved,
    PropagationWindowElapsed,
    Retired,
    RollbackCompleted,
    RollbackRequested,
    RollingBack,
    RotationPhase,
    Stable,
    Switched,
    SwitchCommitted,
    ThresholdBreached,
    can_rollback,
    state_from_secret,
    transition,
)

AT = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _awaiting(**flags):
    return AwaitingPropagation(old_kid="old", new_kid="new", **flags)


def test_happy_path_walks_every_phase():
    state = Stable(active_kid="old")
    phases = [state.phase]
    for event in [
        Begin(),
        DualPublishCommitted(new_kid="new"),
        GateOpened(),
        PropagationObserved(polls=1),
        PropagationWindowElapsed(),
        SwitchCommitted(at=AT),
        MonitoringStarted(),
        ThresholdBreached(error_rate=0.2),
        Retired(),
    ]:
        state = transition(state, event)
        phases.append(state.phase)

    assert state == Stable(active_kid="new")
    assert phases == [
        RotationPhase.STABLE,
        RotationPhase.GENERATING,
        RotationPhase.DUAL_PUBLISHED,
        RotationPhase.AWAITING_PROPAGATION,
        RotationPhase.AWAITING_PROPAGATION,
        RotationPhase.AWAITING_PROPAGATION,
        RotationPhase.SWITCHED,
        RotationPhase.MONITORING,
        RotationPhase.MONITORING,
        RotationPhase.STABLE,
    ]


def test_cannot_switch_without_verification_and_wait():
    with pytest.raises(InvalidTransitionError):
        transition(_awaiting(), SwitchCommitted(at=AT))
    with pytest.raises(InvalidTransitionError):
        transition(_awaiting(verified=True), SwitchCommitted(at=AT))
    with pytest.raises(InvalidTransitionError):
        transition(_awaiting(), PropagationWindowElapsed())


def test_missed_propagation_rolls_back_to_original_key():
    state = transition(_awaiting(), PropagationMissed(polls=5))
    assert isinstance(state, RollingBack)
    assert "5 polls" in state.reason

    assert transition(state, RollbackCompleted()) == Stable(active_kid="old")


@pytest.mark.parametrize(
    "state",
    [
        Generating(old_kid="old"),
        DualPublished(old_kid="old", new_kid="new"),
        _awaiting(verified=True, window_elapsed=True),
    ],
)
def test_rollback_allowed_before_switch(state):
    assert can_rollback(state)
    rolled = transition(state, RollbackRequested(reason="operator"))
    assert rolled.old_kid == "old"
    assert rolled.reason == "operator"


@pytest.mark.parametrize(
    "state",
    [
        Stable(active_kid="old"),
        Switched(old_kid="old", new_kid="new", switched_at=AT),
        Monitoring(old_kid="old", new_kid="new", switched_at=AT),
        RollingBack(old_kid="old", reason="x"),
    ],
)
def test_rollback_rejected_from_and_after_switch(state):
    assert not can_rollback(state)
    with pytest.raises(InvalidTransitionError):
        transition(state, RollbackRequested(reason="too late"))


def test_breach_during_monitoring_only_counts():
    state = Monitoring(old_kid="old", new_kid="new", switched_at=AT)
    state = transition(transition(state, ThresholdBreached(error_rate=0.3)), ThresholdBreached(error_rate=0.4))
    assert isinstance(state, Monitoring)
    assert state.breaches == 2


def test_states_are_immutable():
    state = Stable(active_kid="old")
    with pytest.raises(Exception):
        state.active_kid = "new"


def test_state_from_secret_resumes_dual_published():
    generator = KeyGenerator()
    old, new = generator.generate("svc"), generator.generate("svc")

    assert state_from_secret(SigningSecret.for_keypair(old)) == Stable(active_kid=old.kid)
    resumed = state_from_secret(SigningSecret.for_keypair(old).with_pending(new))
    assert resumed == DualPublished(old_kid=old.kid, new_kid=new.kid)
