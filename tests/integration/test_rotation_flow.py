"""End-to-end standard rotation against in-memory stores and a fake clock."""

import asyncio
from datetime import timedelta

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from keywarden.errors import (
    AlreadyInProgressError,
    InvalidTransitionError,
    KeyLifecycleError,
    SecretNotFoundError,
)
from keywarden.jwks import JWKSPublisher
from keywarden.keys import KeyPair
from keywarden.models import PublicKeyRecord, RotationMarker, SigningSecret
from keywarden.rotation import RotationOrchestrator, RotationPhase, Stable
from keywarden.rotation.orchestrator import _RotationRun
from keywarden.store.inmemory import InMemoryPublicKeyRegistry
from keywarden.tokens import UnknownKeyIdError, sign_token, verify_token
from keywarden.trace import StepTracer, Verdict

from fixtures.consumers import FrozenJWKSSource

OLD_KID = "svc-2024-aaaa"


async def _seed(key_store, registry, clock, kid=OLD_KID):
    keypair = KeyPair.from_private_key(kid, ec.generate_private_key(ec.SECP256R1()))
    await registry.register_public_key(
        PublicKeyRecord.from_keypair(keypair, "svc", clock.now(), ttl=timedelta(days=90))
    )
    await key_store.put_secret("svc", SigningSecret.for_keypair(keypair), None)
    return keypair


def _orchestrator(key_store, registry, clock, monitor, rotation_config, jwks_config, **kwargs):
    publisher = kwargs.pop("publisher", None) or JWKSPublisher(registry, key_store, clock=clock)
    return RotationOrchestrator(
        key_store,
        registry,
        publisher,
        monitor,
        clock=clock,
        config=rotation_config,
        jwks_config=jwks_config,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_happy_path_overlaps_then_retires(
    key_store, registry, clock, monitor, rotation_config, jwks_config
):
    old = await _seed(key_store, registry, clock)
    publisher = JWKSPublisher(registry, key_store, clock=clock)
    orchestrator = _orchestrator(
        key_store, registry, clock, monitor, rotation_config, jwks_config, publisher=publisher
    )
    in_flight = sign_token(old, "svc", clock.now(), ttl_seconds=3600)
    snapshots = []

    async def observe(seconds):
        state = orchestrator.current_state("svc")
        secret = await key_store.get_secret("svc")
        document = await publisher.serve("svc")
        snapshots.append((state.phase, seconds, document.kids, secret.active_kid, secret.pending_kid))

    clock.on_sleep(observe)
    report = await orchestrator.rotate("svc")

    assert report.verdict is Verdict.PASS
    assert report.final_state == "STABLE"
    assert report.old_kid == OLD_KID
    new_kid = report.new_kid
    assert new_kid.startswith("svc-") and new_kid != OLD_KID

    waiting = [s for s in snapshots if s[0] is RotationPhase.AWAITING_PROPAGATION and s[1] == 300]
    assert waiting, snapshots
    for _, _, kids, active, pending in waiting:
        # both kids listed; the old key keeps signing until the switch
        assert kids == [OLD_KID, new_kid]
        assert (active, pending) == (OLD_KID, new_kid)

    monitoring = [s for s in snapshots if s[0] is RotationPhase.MONITORING]
    assert len(monitoring) == 900 // 60
    for _, _, kids, active, pending in monitoring:
        assert kids == [new_kid, OLD_KID]
        assert active == new_kid and pending is None

    # the active kid was servable at every suspension point
    assert all(active in kids for _, _, kids, active, _ in snapshots)

    assert (await publisher.serve("svc")).kids == [new_kid]
    assert await registry.get_public_key(OLD_KID) is None
    secret = await key_store.get_secret("svc")
    assert secret.active_kid == new_kid and secret.rotation is None
    assert clock.total_slept >= 300 + 900
    with pytest.raises(UnknownKeyIdError):
        verify_token(in_flight, (await publisher.serve("svc")).to_jwks(), now=clock.now())
    assert [step.name for step in report.steps] == [
        "acquire_marker",
        "generate",
        "dual_publish",
        "propagation_gate",
        "propagation_wait",
        "switch",
        "monitoring",
        "retire",
    ]


@pytest.mark.asyncio
async def test_in_flight_tokens_verify_through_monitoring(
    key_store, registry, clock, monitor, rotation_config, jwks_config
):
    old = await _seed(key_store, registry, clock)
    publisher = JWKSPublisher(registry, key_store, clock=clock)
    orchestrator = _orchestrator(
        key_store, registry, clock, monitor, rotation_config, jwks_config, publisher=publisher
    )
    results = []

    async def verify_old_token(seconds):
        if orchestrator.current_state("svc").phase is RotationPhase.MONITORING:
            token = sign_token(old, "svc", clock.now() - timedelta(seconds=30))
            claims = verify_token(token, (await publisher.serve("svc")).to_jwks(), now=clock.now())
            results.append(claims["iss"])

    clock.on_sleep(verify_old_token)
    report = await orchestrator.rotate("svc")

    assert report.verdict is Verdict.PASS
    assert results and all(iss == "svc" for iss in results)


@pytest.mark.asyncio
async def test_propagation_failure_rolls_back(
    key_store, registry, clock, monitor, rotation_config, jwks_config
):
    await _seed(key_store, registry, clock)
    real = JWKSPublisher(registry, key_store, clock=clock)
    frozen = FrozenJWKSSource(real, visible={OLD_KID})
    orchestrator = _orchestrator(
        key_store, registry, clock, monitor, rotation_config, jwks_config, publisher=frozen
    )

    report = await orchestrator.rotate("svc")

    assert report.verdict is Verdict.ROLLED_BACK
    assert report.final_state == "STABLE"
    assert "not visible" in report.error
    assert frozen.calls == rotation_config.propagation_polls
    assert (await real.serve("svc")).kids == [OLD_KID]
    secret = await key_store.get_secret("svc")
    assert (secret.active_kid, secret.pending_kid, secret.rotation) == (OLD_KID, None, None)
    assert report.step("switch") is None
    assert report.step("rollback").status == "ok"


@pytest.mark.asyncio
async def test_resume_does_not_mint_second_key(
    key_store, registry, clock, monitor, rotation_config, jwks_config
):
    old = await _seed(key_store, registry, clock)
    pending = KeyPair.from_private_key("svc-2024-bbbb", ec.generate_private_key(ec.SECP256R1()))
    # an earlier run crashed after the secret write but before the registry write
    secret = await key_store.get_secret("svc")
    await key_store.put_secret("svc", secret.with_pending(pending), secret.concurrency_token)

    orchestrator = _orchestrator(key_store, registry, clock, monitor, rotation_config, jwks_config)
    report = await orchestrator.rotate("svc")

    assert report.verdict is Verdict.PASS
    assert report.new_kid == "svc-2024-bbbb"
    assert report.step("resume") is not None
    assert report.step("generate") is None
    assert [r.kid for r in await registry.list_public_keys("svc")] == ["svc-2024-bbbb"]
    assert old.kid == OLD_KID


@pytest.mark.asyncio
async def test_cancel_during_propagation_wait_rolls_back(
    key_store, registry, clock, monitor, rotation_config, jwks_config
):
    await _seed(key_store, registry, clock)
    orchestrator = _orchestrator(key_store, registry, clock, monitor, rotation_config, jwks_config)

    def cancel_on_wait(seconds):
        if seconds == rotation_config.propagation_window_seconds:
            assert orchestrator.cancel("svc")

    clock.on_sleep(cancel_on_wait)
    report = await orchestrator.rotate("svc")

    assert report.verdict is Verdict.ROLLED_BACK
    secret = await key_store.get_secret("svc")
    assert secret.active_kid == OLD_KID and secret.pending_kid is None
    assert [r.kid for r in await registry.list_public_keys("svc")] == [OLD_KID]
    assert not orchestrator.cancel("svc")


@pytest.mark.asyncio
async def test_cancel_during_monitoring_keeps_both_records(
    key_store, registry, clock, monitor, rotation_config, jwks_config
):
    await _seed(key_store, registry, clock)
    orchestrator = _orchestrator(key_store, registry, clock, monitor, rotation_config, jwks_config)

    def cancel_when_monitoring(seconds):
        if orchestrator.current_state("svc").phase is RotationPhase.MONITORING:
            orchestrator.cancel("svc")

    clock.on_sleep(cancel_when_monitoring)
    report = await orchestrator.rotate("svc")

    assert report.verdict is Verdict.PASS
    assert report.final_state == "MONITORING"
    assert (await key_store.get_secret("svc")).active_kid == report.new_kid
    assert await registry.get_public_key(OLD_KID) is not None
    assert report.step("retire") is None


@pytest.mark.asyncio
async def test_denied_confirmation_rolls_back(
    key_store, registry, clock, monitor, rotation_config, jwks_config
):
    await _seed(key_store, registry, clock)

    class Deny:
        async def wait_for_confirmation(self, service_id, old_kid, new_kid):
            return False

    config = rotation_config.model_copy(update={"require_confirmation": True})
    orchestrator = _orchestrator(
        key_store, registry, clock, monitor, config, jwks_config, confirmation=Deny()
    )
    report = await orchestrator.rotate("svc")

    assert report.verdict is Verdict.ROLLED_BACK
    assert report.step("operator_confirmation").detail == "denied"
    assert (await key_store.get_secret("svc")).active_kid == OLD_KID


@pytest.mark.asyncio
async def test_threshold_breach_alerts_without_rollback(
    key_store, registry, clock, monitor, alerts, rotation_config, jwks_config
):
    await _seed(key_store, registry, clock)
    orchestrator = _orchestrator(key_store, registry, clock, monitor, rotation_config, jwks_config)

    def failing_consumers(seconds):
        if orchestrator.current_state("svc").phase is RotationPhase.MONITORING:
            monitor.record_failure("svc", "unknown")

    clock.on_sleep(failing_consumers)
    report = await orchestrator.rotate("svc")

    assert report.verdict is Verdict.PASS
    assert report.final_state == "STABLE"
    assert len(alerts.alerts) == 1
    assert alerts.last.context["new_kid"] == report.new_kid
    assert (await key_store.get_secret("svc")).active_kid == report.new_kid


class _FlakyRegistry(InMemoryPublicKeyRegistry):
    def __init__(self, fail_remove_of):
        super().__init__()
        self.fail_remove_of = fail_remove_of

    async def remove_public_key(self, kid, proof):
        if kid == self.fail_remove_of:
            raise KeyLifecycleError("registry unavailable")
        return await super().remove_public_key(kid, proof)


@pytest.mark.asyncio
async def test_failure_after_switch_is_not_rolled_back(
    key_store, clock, monitor, rotation_config, jwks_config
):
    registry = _FlakyRegistry(fail_remove_of=OLD_KID)
    await _seed(key_store, registry, clock)
    orchestrator = _orchestrator(key_store, registry, clock, monitor, rotation_config, jwks_config)

    report = await orchestrator.rotate("svc")

    assert report.verdict is Verdict.FAILED
    assert report.final_state == "MONITORING"
    assert report.context["failed_state"] == "MONITORING"
    secret = await key_store.get_secret("svc")
    assert secret.active_kid == report.new_kid
    assert secret.rotation is None


@pytest.mark.asyncio
async def test_dry_run_changes_nothing(key_store, registry, clock, monitor, rotation_config, jwks_config):
    await _seed(key_store, registry, clock)
    before = await key_store.get_secret("svc")
    orchestrator = _orchestrator(key_store, registry, clock, monitor, rotation_config, jwks_config)

    report = await orchestrator.rotate("svc", dry_run=True)

    assert report.dry_run and report.verdict is Verdict.PASS
    assert report.old_kid == OLD_KID and report.new_kid is None
    after = await key_store.get_secret("svc")
    assert after.concurrency_token == before.concurrency_token
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_fresh_marker_rejects_and_abandoned_marker_is_taken_over(
    key_store, registry, clock, monitor, rotation_config, jwks_config
):
    await _seed(key_store, registry, clock)
    orchestrator = _orchestrator(key_store, registry, clock, monitor, rotation_config, jwks_config)
    secret = await key_store.get_secret("svc")
    marked = await key_store.put_secret(
        "svc",
        secret.with_marker(RotationMarker(run_id="other", started_at=clock.now())),
        secret.concurrency_token,
    )

    with pytest.raises(AlreadyInProgressError):
        await orchestrator.rotate("svc")
    assert (await key_store.get_secret("svc")).concurrency_token == marked.concurrency_token

    clock.advance(rotation_config.marker_grace_seconds + 1)
    report = await orchestrator.rotate("svc")
    assert report.verdict is Verdict.PASS


@pytest.mark.asyncio
async def test_unknown_service_raises(key_store, registry, clock, monitor, rotation_config, jwks_config):
    orchestrator = _orchestrator(key_store, registry, clock, monitor, rotation_config, jwks_config)
    with pytest.raises(SecretNotFoundError):
        await orchestrator.rotate("ghost")


class _FailingRegisterRegistry(InMemoryPublicKeyRegistry):
    def __init__(self):
        super().__init__()
        self.failures = 0

    async def register_public_key(self, record):
        if self.failures:
            self.failures -= 1
            raise KeyLifecycleError("registry unavailable")
        return await super().register_public_key(record)


@pytest.mark.asyncio
async def test_failed_resume_releases_marker_and_next_run_succeeds(
    key_store, clock, monitor, rotation_config, jwks_config
):
    registry = _FailingRegisterRegistry()
    await _seed(key_store, registry, clock)
    pending = KeyPair.from_private_key("svc-2024-bbbb", ec.generate_private_key(ec.SECP256R1()))
    secret = await key_store.get_secret("svc")
    await key_store.put_secret("svc", secret.with_pending(pending), secret.concurrency_token)
    registry.failures = 1
    orchestrator = _orchestrator(key_store, registry, clock, monitor, rotation_config, jwks_config)

    first = await orchestrator.rotate("svc")

    assert first.verdict is Verdict.ROLLED_BACK
    assert first.step("resume").status == "failed"
    after = await key_store.get_secret("svc")
    assert (after.active_kid, after.pending_kid, after.rotation) == (OLD_KID, None, None)
    assert orchestrator.current_state("svc") is None

    second = await orchestrator.rotate("svc")
    assert second.verdict is Verdict.PASS
    assert (await key_store.get_secret("svc")).rotation is None


class _NoRemoveRegistry(InMemoryPublicKeyRegistry):
    async def remove_public_key(self, kid, proof):
        raise KeyLifecycleError("registry unavailable")


@pytest.mark.asyncio
async def test_marker_released_when_rollback_after_cancel_fails(
    key_store, clock, monitor, rotation_config, jwks_config
):
    registry = _NoRemoveRegistry()
    await _seed(key_store, registry, clock)
    orchestrator = _orchestrator(key_store, registry, clock, monitor, rotation_config, jwks_config)
    task = asyncio.ensure_future(orchestrator.rotate("svc"))

    def cancel_on_wait(seconds):
        if seconds == rotation_config.propagation_window_seconds:
            task.cancel()

    clock.on_sleep(cancel_on_wait)
    with pytest.raises((asyncio.CancelledError, KeyLifecycleError)):
        await task

    secret = await key_store.get_secret("svc")
    assert secret.rotation is None
    assert secret.active_kid == OLD_KID


@pytest.mark.asyncio
async def test_effects_reject_a_run_in_the_wrong_phase(
    key_store, registry, clock, monitor, rotation_config, jwks_config
):
    await _seed(key_store, registry, clock)
    orchestrator = _orchestrator(key_store, registry, clock, monitor, rotation_config, jwks_config)
    run = _RotationRun(
        service_id="svc",
        issuer="svc",
        run_id="r1",
        tracer=StepTracer(clock, "rotate", "svc"),
        state=Stable(active_kid=OLD_KID),
    )

    with pytest.raises(InvalidTransitionError):
        await orchestrator._roll_back(run)
    with pytest.raises(InvalidTransitionError):
        await orchestrator._monitor_and_retire(run)
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_error_rate_ignores_traffic_before_the_switch(
    key_store, registry, clock, monitor, alerts, rotation_config, jwks_config
):
    await _seed(key_store, registry, clock)
    orchestrator = _orchestrator(key_store, registry, clock, monitor, rotation_config, jwks_config)
    recorded = {"before": False, "after": False}

    def traffic(seconds):
        phase = orchestrator.current_state("svc").phase
        if phase is RotationPhase.AWAITING_PROPAGATION and not recorded["before"]:
            recorded["before"] = True
            for _ in range(50):
                monitor.record_success("svc", OLD_KID, clock.now() - timedelta(seconds=1))
        elif phase is RotationPhase.MONITORING and not recorded["after"]:
            recorded["after"] = True
            monitor.record_failure("svc", "unknown")

    clock.on_sleep(traffic)
    report = await orchestrator.rotate("svc")

    assert report.verdict is Verdict.PASS
    assert recorded == {"before": True, "after": True}
    assert len(alerts.alerts) == 1
    assert alerts.last.error_rate == 1.0
