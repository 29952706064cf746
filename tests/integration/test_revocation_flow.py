"""Emergency revocation end to end, including its degraded paths."""

import asyncio

import pytest

from keywarden.bootstrap import bootstrap_service
from keywarden.errors import ConflictError, KeyLifecycleError, SecretNotFoundError
from keywarden.hooks import ConsumerStatus, LocalCacheFlushHook, LocalVerifierProbe
from keywarden.jwks import JWKSPublisher
from keywarden.keys import KeyGenerator
from keywarden.models import PublicKeyRecord
from keywarden.revocation import RevocationOrchestrator
from keywarden.store.inmemory import InMemoryKeyStore, InMemoryPublicKeyRegistry
from keywarden.tokens import CachingJWKSVerifier, UnknownKeyIdError, sign_token
from keywarden.trace import Verdict

from fixtures.consumers import BrokenFlushHook, ScriptedFlushHook


async def _bootstrapped(key_store, registry, clock, service_id="svc"):
    await bootstrap_service(key_store, registry, service_id, clock=clock)
    return await key_store.get_secret(service_id)


def _orchestrator(key_store, registry, clock, alerts, revocation_config, **kwargs):
    publisher = JWKSPublisher(registry, key_store, clock=clock)
    kwargs.setdefault("consumers_for", lambda service_id: ["ledger"])
    return RevocationOrchestrator(
        key_store,
        registry,
        publisher,
        clock=clock,
        config=revocation_config,
        alert_sink=alerts,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_compromised_key_is_rejected_by_flushed_consumers(
    key_store, registry, clock, alerts, revocation_config
):
    secret = await _bootstrapped(key_store, registry, clock)
    publisher = JWKSPublisher(registry, key_store, clock=clock)
    ledger = CachingJWKSVerifier("ledger", publisher, "svc", clock=clock, cache_ttl_seconds=300)
    verifiers = {"ledger": ledger}
    with secret.active_keypair() as old:
        stolen = sign_token(old, "svc", clock.now(), ttl_seconds=3600)
    # the consumer has the compromised key cached
    await ledger.verify(stolen)

    flush = LocalCacheFlushHook(verifiers)
    orchestrator = _orchestrator(
        key_store,
        registry,
        clock,
        alerts,
        revocation_config,
        flush_hook=flush,
        probe=LocalVerifierProbe(verifiers),
    )
    report = await orchestrator.revoke("svc", reason="key leaked in CI logs")

    assert report.verdict is Verdict.PASS, report.error
    assert report.final_state == "VERIFIED"
    assert report.old_kid == secret.active_kid
    assert flush.flushed == ["ledger"]
    assert (await publisher.serve("svc")).kids == [report.new_kid]
    with pytest.raises(UnknownKeyIdError):
        await ledger.verify(stolen)

    current = await key_store.get_secret("svc")
    assert current.active_kid == report.new_kid
    assert current.revocation.reason == "key leaked in CI logs"
    assert current.revocation.revoked_kid == secret.active_kid
    with current.active_keypair() as new:
        claims = await ledger.verify(sign_token(new, "svc", clock.now()))
    assert claims["iss"] == "svc"
    assert alerts.alerts == []


@pytest.mark.asyncio
async def test_every_step_is_timed_and_within_sla(
    key_store, registry, clock, alerts, revocation_config
):
    await _bootstrapped(key_store, registry, clock)
    orchestrator = _orchestrator(
        key_store,
        registry,
        clock,
        alerts,
        revocation_config,
        flush_hook=ScriptedFlushHook({"ledger": [ConsumerStatus.STABLE]}),
    )

    report = await orchestrator.revoke("svc", reason="rotation drill")

    assert [step.name for step in report.steps] == [
        "generate",
        "replace_secret",
        "remove_record",
        "flush_caches",
        "verify",
    ]
    assert all(step.status == "ok" and step.elapsed_ms >= 0 for step in report.steps)
    assert report.context["within_sla"] is True
    assert report.context["sla_seconds"] == 300
    assert report.elapsed_ms <= 300 * 1000


@pytest.mark.asyncio
async def test_broken_flush_is_degraded_but_safe(
    key_store, registry, clock, alerts, revocation_config
):
    secret = await _bootstrapped(key_store, registry, clock)
    hook = BrokenFlushHook()
    orchestrator = _orchestrator(key_store, registry, clock, alerts, revocation_config, flush_hook=hook)

    report = await orchestrator.revoke("svc", reason="suspected exposure")

    assert report.verdict is Verdict.DEGRADED_SAFE
    assert report.final_state == "RECORD_REMOVED"
    assert report.step("flush_caches").status == "failed"
    assert hook.attempts == ["ledger"]
    assert alerts.last.severity == "critical"
    assert alerts.last.service_id == "svc"
    # the compromised private key is gone regardless
    current = await key_store.get_secret("svc")
    assert current.active_kid == report.new_kid
    assert secret.active_kid not in current.kids
    assert await registry.get_public_key(secret.active_kid) is None


@pytest.mark.asyncio
async def test_failed_consumer_status_is_degraded(
    key_store, registry, clock, alerts, revocation_config
):
    await _bootstrapped(key_store, registry, clock)
    hook = ScriptedFlushHook({"ledger": [ConsumerStatus.UNKNOWN, ConsumerStatus.FAILED]})
    orchestrator = _orchestrator(key_store, registry, clock, alerts, revocation_config, flush_hook=hook)

    report = await orchestrator.revoke("svc", reason="suspected exposure")

    assert report.verdict is Verdict.DEGRADED_SAFE
    assert "ledger failed" in report.error
    assert hook.polls["ledger"] == 2
    assert clock.sleeps == [revocation_config.consumer_poll_interval_seconds]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "strict, expected_polls",
    [(False, 1), (True, 3)],
)
async def test_wait_for_launching_or_stable(
    key_store, registry, clock, alerts, revocation_config, strict, expected_polls
):
    await _bootstrapped(key_store, registry, clock)
    hook = ScriptedFlushHook(
        {"ledger": [ConsumerStatus.LAUNCHING, ConsumerStatus.LAUNCHING, ConsumerStatus.STABLE]}
    )
    config = revocation_config.model_copy(update={"strict_wait": strict})
    orchestrator = _orchestrator(key_store, registry, clock, alerts, config, flush_hook=hook)

    report = await orchestrator.revoke("svc", reason="drill")

    assert report.verdict is Verdict.PASS
    assert hook.polls["ledger"] == expected_polls


class _RejectingKeyStore(InMemoryKeyStore):
    def __init__(self):
        super().__init__()
        self.frozen = False

    async def put_secret(self, service_id, secret, expected_token):
        if self.frozen:
            raise ConflictError(f"write to {service_id} rejected")
        return await super().put_secret(service_id, secret, expected_token)


@pytest.mark.asyncio
async def test_failed_swap_leaves_everything_unchanged(registry, clock, alerts, revocation_config):
    key_store = _RejectingKeyStore()
    before = await _bootstrapped(key_store, registry, clock)
    key_store.frozen = True
    orchestrator = _orchestrator(key_store, registry, clock, alerts, revocation_config)

    report = await orchestrator.revoke("svc", reason="leak")

    assert report.verdict is Verdict.FAILED
    assert report.final_state == "REQUESTED"
    assert report.context["error_type"] == "ConflictError"
    after = await key_store.get_secret("svc")
    assert after.concurrency_token == before.concurrency_token
    assert [r.kid for r in await registry.list_public_keys("svc")] == [before.active_kid]
    assert alerts.alerts == []


class _StuckRegistry(InMemoryPublicKeyRegistry):
    async def remove_public_key(self, kid, proof):
        raise KeyLifecycleError(f"registry refused to drop {kid}")


@pytest.mark.asyncio
async def test_record_removal_failure_after_swap_is_degraded(
    key_store, clock, alerts, revocation_config
):
    registry = _StuckRegistry()
    secret = await _bootstrapped(key_store, registry, clock)
    orchestrator = _orchestrator(key_store, registry, clock, alerts, revocation_config)

    report = await orchestrator.revoke("svc", reason="leak")

    assert report.verdict is Verdict.DEGRADED_SAFE
    assert report.final_state == "COMMITTED"
    assert (await key_store.get_secret("svc")).active_kid == report.new_kid
    assert report.new_kid != secret.active_kid
    assert alerts.last.context["state"] == "COMMITTED"


@pytest.mark.asyncio
async def test_pending_key_of_interrupted_rotation_is_revoked_too(
    key_store, registry, clock, alerts, revocation_config
):
    secret = await _bootstrapped(key_store, registry, clock)
    pending = KeyGenerator().generate("svc", clock.now())
    await registry.register_public_key(PublicKeyRecord.from_keypair(pending, "svc", clock.now()))
    await key_store.put_secret("svc", secret.with_pending(pending), secret.concurrency_token)
    orchestrator = _orchestrator(
        key_store, registry, clock, alerts, revocation_config, consumers_for=lambda s: []
    )

    report = await orchestrator.revoke("svc", reason="leak")

    assert report.verdict is Verdict.PASS
    assert [r.kid for r in await registry.list_public_keys("svc")] == [report.new_kid]
    current = await key_store.get_secret("svc")
    assert current.pending_kid is None and current.rotation is None


@pytest.mark.asyncio
async def test_kid_mismatch_and_unknown_service_are_rejected(
    key_store, registry, clock, alerts, revocation_config
):
    secret = await _bootstrapped(key_store, registry, clock)
    orchestrator = _orchestrator(key_store, registry, clock, alerts, revocation_config)

    with pytest.raises(KeyLifecycleError):
        await orchestrator.revoke("svc", reason="leak", kid="svc-1999-ffffff")
    with pytest.raises(SecretNotFoundError):
        await orchestrator.revoke("ghost", reason="leak")
    assert (await key_store.get_secret("svc")).concurrency_token == secret.concurrency_token


@pytest.mark.asyncio
async def test_dry_run_reports_plan_only(key_store, registry, clock, alerts, revocation_config):
    secret = await _bootstrapped(key_store, registry, clock)
    orchestrator = _orchestrator(key_store, registry, clock, alerts, revocation_config)

    report = await orchestrator.revoke("svc", reason="leak", dry_run=True)

    assert report.dry_run and report.verdict is Verdict.PASS
    assert report.step("plan").status == "skipped"
    assert (await key_store.get_secret("svc")).concurrency_token == secret.concurrency_token


@pytest.mark.asyncio
async def test_cancellation_after_swap_still_completes(
    key_store, registry, clock, alerts, revocation_config
):
    secret = await _bootstrapped(key_store, registry, clock)
    hook = ScriptedFlushHook({"ledger": [ConsumerStatus.LAUNCHING, ConsumerStatus.STABLE]})
    config = revocation_config.model_copy(update={"strict_wait": True})
    orchestrator = _orchestrator(key_store, registry, clock, alerts, config, flush_hook=hook)
    task = asyncio.ensure_future(orchestrator.revoke("svc", reason="leak"))
    clock.on_sleep(lambda seconds: task.cancel())

    with pytest.raises(asyncio.CancelledError):
        await task

    assert hook.polls["ledger"] == 2
    assert await registry.get_public_key(secret.active_kid) is None
    assert (await key_store.get_secret("svc")).active_kid != secret.active_kid


class _SlowAckKeyStore(InMemoryKeyStore):
    """Applies the write, then stalls past the caller's timeout."""

    def __init__(self):
        super().__init__()
        self.stall = False

    async def put_secret(self, service_id, secret, expected_token):
        result = await super().put_secret(service_id, secret, expected_token)
        if self.stall:
            self.stall = False
            await asyncio.sleep(1)
        return result


class _StalledKeyStore(InMemoryKeyStore):
    """Stalls before writing, so a timed-out write never lands."""

    def __init__(self):
        super().__init__()
        self.stall = False

    async def put_secret(self, service_id, secret, expected_token):
        if self.stall:
            await asyncio.sleep(1)
        return await super().put_secret(service_id, secret, expected_token)


@pytest.mark.asyncio
async def test_timed_out_swap_that_landed_completes_revocation(
    registry, clock, alerts, revocation_config
):
    key_store = _SlowAckKeyStore()
    secret = await _bootstrapped(key_store, registry, clock)
    key_store.stall = True
    orchestrator = _orchestrator(
        key_store,
        registry,
        clock,
        alerts,
        revocation_config,
        call_timeout=0.05,
        conflict_attempts=1,
        consumers_for=lambda s: [],
    )

    report = await orchestrator.revoke("svc", reason="leak")

    assert report.verdict is Verdict.PASS, report.error
    assert report.step("replace_secret").status == "failed"
    assert report.step("confirm_swap").status == "ok"
    assert report.step("remove_record").status == "ok"
    assert (await key_store.get_secret("svc")).active_kid == report.new_kid
    assert await registry.get_public_key(secret.active_kid) is None
    publisher = JWKSPublisher(registry, key_store, clock=clock)
    assert (await publisher.serve("svc")).kids == [report.new_kid]


@pytest.mark.asyncio
async def test_timed_out_swap_that_did_not_land_fails_cleanly(
    registry, clock, alerts, revocation_config
):
    key_store = _StalledKeyStore()
    secret = await _bootstrapped(key_store, registry, clock)
    key_store.stall = True
    orchestrator = _orchestrator(
        key_store,
        registry,
        clock,
        alerts,
        revocation_config,
        call_timeout=0.05,
        conflict_attempts=1,
    )

    report = await orchestrator.revoke("svc", reason="leak")

    assert report.verdict is Verdict.FAILED
    assert report.context["error_type"] == "OperationTimeoutError"
    assert "did not land" in report.step("confirm_swap").detail
    assert (await key_store.get_secret("svc")).active_kid == secret.active_kid
    assert [r.kid for r in await registry.list_public_keys("svc")] == [secret.active_kid]
