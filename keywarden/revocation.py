"""Emergency revocation: non-overlapping replacement of a compromised key."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

import jwt

from .clock import Clock, SystemClock
from .config import JwksConfig, RevocationConfig
from .errors import (
    KeyLifecycleError,
    OperationTimeoutError,
    PropagationError,
)
from .gateway import StoreGateway
from .hooks import Alert, AlertSink, CacheFlushHook, ConsumerStatus, VerifierProbe
from .jwks import JWKSSource
from .keys import KeyGenerator, KeyPair
from .models import PublicKeyRecord, RemovalProof, Revocation, SigningSecret
from .monitor import ConsistencyMonitor
from .store.base import KeyStore, PublicKeyRegistry
from .tokens import sign_token, verify_token
from .trace import RunReport, StepTracer, Verdict
from .utils.timeouts import with_timeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RevocationPhase(str, Enum):
    REQUESTED = "REQUESTED"
    GENERATED = "GENERATED"
    COMMITTED = "COMMITTED"
    RECORD_REMOVED = "RECORD_REMOVED"
    CACHES_FLUSHED = "CACHES_FLUSHED"
    VERIFIED = "VERIFIED"


class _Budget:
    """Tracks the remaining SLA and hands out per-step timeouts."""

    def __init__(self, clock: Clock, sla_seconds: float, step_timeout: float) -> None:
        self.clock = clock
        self.sla_seconds = sla_seconds
        self.step_timeout = step_timeout
        self._started = clock.monotonic()

    @property
    def elapsed(self) -> float:
        return self.clock.monotonic() - self._started

    @property
    def remaining(self) -> float:
        return self.sla_seconds - self.elapsed

    def run(self, awaitable: Awaitable[T], operation: str) -> Awaitable[T]:
        remaining = self.remaining
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationTimeoutError(operation, 0, context={"sla_seconds": self.sla_seconds})
        return with_timeout(awaitable, min(self.step_timeout, remaining), operation)


@dataclass
class _RevocationRun:
    service_id: str
    issuer: str
    run_id: str
    reason: str
    consumers: List[str]
    tracer: StepTracer
    budget: _Budget
    committed: SigningSecret
    old_kid: str
    revoked_kids: List[str]
    old_probe: str
    new_keypair: KeyPair
    committed_at: float


class RevocationOrchestrator:
    """Replaces a suspected-compromised signing key without any overlap.

    Once the secret swap has committed the compromised private key is gone
    and cannot mint new tokens. Failures after that point leave the service
    degraded but safe: a stale cache may still list the old public record
    for up to one TTL. The swap itself is never undone, and cancellation is
    not honoured after it.
    """

    def __init__(
        self,
        key_store: KeyStore,
        registry: PublicKeyRegistry,
        publisher: JWKSSource,
        flush_hook: Optional[CacheFlushHook] = None,
        probe: Optional[VerifierProbe] = None,
        monitor: Optional[ConsistencyMonitor] = None,
        generator: Optional[KeyGenerator] = None,
        clock: Optional[Clock] = None,
        config: Optional[RevocationConfig] = None,
        jwks_config: Optional[JwksConfig] = None,
        call_timeout: float = 10,
        issuer_for: Optional[Callable[[str], str]] = None,
        consumers_for: Optional[Callable[[str], Sequence[str]]] = None,
        alert_sink: Optional[AlertSink] = None,
        conflict_attempts: int = 3,
    ) -> None:
        self.clock = clock or SystemClock()
        self.config = config or RevocationConfig()
        self.jwks_config = jwks_config or JwksConfig()
        self.store = StoreGateway(
            key_store,
            registry,
            self.clock,
            call_timeout=call_timeout,
            conflict_attempts=conflict_attempts,
        )
        self.publisher = publisher
        self.flush_hook = flush_hook
        self.probe = probe
        self.monitor = monitor or ConsistencyMonitor(clock=self.clock)
        self.generator = generator or KeyGenerator()
        self._issuer_for = issuer_for or (lambda service_id: service_id)
        self._consumers_for = consumers_for or (lambda service_id: [])
        self.alert_sink = alert_sink or self.monitor.alert_sink

    async def revoke(
        self,
        service_id: str,
        reason: str,
        kid: Optional[str] = None,
        run_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> RunReport:
        """Revoke the active key of ``service_id``.

        ``kid``, when given, must match the currently active kid; this stops
        an operator from revoking a key that a concurrent rotation already
        replaced. Raises :class:`SecretNotFoundError` for unknown services.
        """
        tracer = StepTracer(self.clock, "revoke", service_id)
        budget = _Budget(self.clock, self.config.sla_seconds, self.config.step_timeout_seconds)
        run_id = run_id or uuid.uuid4().hex
        issuer = self._issuer_for(service_id)
        consumers = list(self._consumers_for(service_id))

        secret = await self.store.get_secret(service_id)
        old_kid = secret.active_kid
        if kid is not None and kid != old_kid:
            raise KeyLifecycleError(
                f"{kid} is not the active key of {service_id} (active is {old_kid})",
                context={"active_kid": old_kid, "requested_kid": kid},
            )

        if dry_run:
            tracer.skip(
                "plan",
                RevocationPhase.REQUESTED.value,
                f"would replace {old_kid} wholesale, remove its record and flush "
                f"{len(consumers)} consumer(s) within {self.config.sla_seconds:.0f}s",
            )
            return tracer.report(
                RevocationPhase.REQUESTED.value,
                Verdict.PASS,
                old_kid=old_kid,
                run_id=run_id,
                dry_run=True,
            )

        logger.warning(f"Emergency revocation of {old_kid} for {service_id}: {reason}")
        new_keypair: Optional[KeyPair] = None
        old_probe: Optional[str] = None
        try:
            # Steps 1 and 2 may fail without any lasting effect.
            async with tracer.step("generate", RevocationPhase.REQUESTED.value) as handle:
                taken = {r.kid for r in await self.store.list_records(issuer)}
                taken.update(secret.kids)
                new_keypair = self.generator.generate(service_id, self.clock.now(), taken=taken)
                with secret.active_keypair() as old_keypair:
                    old_probe = sign_token(old_keypair, issuer, self.clock.now(), {"probe": True})
                await budget.run(
                    self.store.register(self._record_for(new_keypair, issuer)),
                    f"register_public_key({new_keypair.kid})",
                )
                handle.detail = f"replacement {new_keypair.kid} published ahead of activation"

            async with tracer.step("replace_secret", RevocationPhase.GENERATED.value) as handle:
                committed = await budget.run(
                    self._replace(service_id, old_kid, new_keypair, reason),
                    f"replace_secret({service_id})",
                )
                handle.detail = f"{old_kid} discarded; {new_keypair.kid} active"
        except BaseException as exc:
            landed: Optional[SigningSecret] = None
            if isinstance(exc, OperationTimeoutError) and new_keypair is not None:
                # A timed-out write has an unknown outcome until the secret is re-read.
                landed = await asyncio.shield(self._confirm_swap(service_id, new_keypair, tracer))
            if landed is None:
                await asyncio.shield(self._discard_replacement(service_id, new_keypair, issuer))
                if not isinstance(exc, KeyLifecycleError):
                    raise
                exc.context.update(tracer.context(RevocationPhase.GENERATED.value))
                report = tracer.report(
                    RevocationPhase.REQUESTED.value,
                    Verdict.FAILED,
                    old_kid=old_kid,
                    new_kid=new_keypair.kid if new_keypair else None,
                    run_id=run_id,
                    error=exc,
                )
                report.context["error_type"] = type(exc).__name__
                return report
            committed = landed

        run = _RevocationRun(
            service_id=service_id,
            issuer=issuer,
            run_id=run_id,
            reason=reason,
            consumers=consumers,
            tracer=tracer,
            budget=budget,
            committed=committed,
            old_kid=old_kid,
            # A pending key held in the compromised secret is discarded with it.
            revoked_kids=[k for k in (old_kid, secret.pending_kid) if k],
            old_probe=old_probe,
            new_keypair=new_keypair,
            committed_at=self.clock.monotonic(),
        )
        completion = asyncio.ensure_future(self._complete(run))
        try:
            return await asyncio.shield(completion)
        except asyncio.CancelledError:
            logger.warning(
                f"Cancellation of revocation {run_id} ignored: {old_kid} is already revoked, completing cleanup"
            )
            await completion
            raise

    # ------------------------------------------------------------------
    def _record_for(self, keypair: KeyPair, issuer: str) -> PublicKeyRecord:
        return PublicKeyRecord.from_keypair(
            keypair,
            issuer=issuer,
            created_at=self.clock.now(),
            ttl=timedelta(days=self.jwks_config.key_ttl_days),
        )

    async def _replace(
        self, service_id: str, old_kid: str, keypair: KeyPair, reason: str
    ) -> SigningSecret:
        revocation = Revocation(timestamp=self.clock.now(), reason=reason, revoked_kid=old_kid)

        def guard(current: SigningSecret) -> None:
            if current.active_kid != old_kid:
                raise KeyLifecycleError(
                    f"Active key of {service_id} changed to {current.active_kid} during revocation"
                )

        return await self.store.commit(
            service_id,
            lambda current: current.replaced(keypair, revocation),
            lambda current: current.active_kid == keypair.kid,
            "replace signing secret",
            guard=guard,
        )

    async def _confirm_swap(
        self, service_id: str, keypair: KeyPair, tracer: StepTracer
    ) -> Optional[SigningSecret]:
        """Return the committed secret if a timed-out swap actually landed."""
        try:
            async with tracer.step("confirm_swap", RevocationPhase.GENERATED.value) as handle:
                current = await self.store.get_secret(service_id)
                landed = current.active_kid == keypair.kid
                handle.detail = (
                    f"{keypair.kid} is active despite the timeout"
                    if landed
                    else f"{current.active_kid} still active; swap did not land"
                )
        except KeyLifecycleError as exc:
            logger.error(f"Could not re-read {service_id} after a timed-out swap: {exc}")
            return None
        if not landed:
            return None
        logger.warning(f"Secret swap for {service_id} landed despite timing out; continuing revocation")
        return current

    async def _discard_replacement(
        self, service_id: str, keypair: Optional[KeyPair], issuer: str
    ) -> None:
        if keypair is None:
            return
        try:
            current = await self.store.get_secret(service_id)
            if keypair.kid in current.kids:
                return
            proof = RemovalProof.from_secret(keypair.kid, current, checked_at=self.clock.now())
            await self.store.remove(keypair.kid, proof)
        except KeyLifecycleError as exc:
            logger.error(f"Could not drop unused replacement {keypair.kid} for {issuer}: {exc}")
        finally:
            keypair.destroy()

    async def _complete(self, run: _RevocationRun) -> RunReport:
        """Steps 3 to 5. Anything failing here yields DEGRADED_SAFE, never a rollback."""
        service_id, issuer, consumers = run.service_id, run.issuer, run.consumers
        tracer, budget, old_kid, new_keypair = run.tracer, run.budget, run.old_kid, run.new_keypair
        run_id = run.run_id
        phase = RevocationPhase.COMMITTED
        try:
            async with tracer.step("remove_record", phase.value) as handle:
                removed = await budget.run(
                    self._remove_records(run.committed, run.revoked_kids, run.reason),
                    f"remove_public_key({old_kid})",
                )
                window = self.clock.monotonic() - run.committed_at
                handle.detail = f"removed {removed} {window * 1000:.0f}ms after the secret swap"
                if window > self.config.record_removal_target_seconds:
                    logger.warning(
                        f"Public record of {old_kid} removed {window:.1f}s after its private key, "
                        f"above the {self.config.record_removal_target_seconds:.0f}s target"
                    )
            phase = RevocationPhase.RECORD_REMOVED

            if self.flush_hook is None or not consumers:
                tracer.skip("flush_caches", phase.value, "no consumers to flush")
            else:
                async with tracer.step("flush_caches", phase.value) as handle:
                    await budget.run(
                        self._flush(self.flush_hook, consumers), f"flush_caches({service_id})"
                    )
                    wait = "stable" if self.config.strict_wait else "launching"
                    handle.detail = f"flushed {', '.join(consumers)} (waited for {wait})"
            phase = RevocationPhase.CACHES_FLUSHED

            async with tracer.step("verify", phase.value) as handle:
                handle.detail = await budget.run(
                    self._verify(service_id, issuer, consumers, old_kid, run.old_probe, new_keypair),
                    f"verify({service_id})",
                )
            phase = RevocationPhase.VERIFIED
        except KeyLifecycleError as exc:
            return await self._degraded(
                service_id, tracer, phase, old_kid, new_keypair.kid, run_id, budget, exc
            )
        except Exception as exc:
            # Collaborator failures (HTTP errors, probe errors) after the swap.
            wrapped = KeyLifecycleError(f"{type(exc).__name__}: {exc}")
            return await self._degraded(
                service_id, tracer, phase, old_kid, new_keypair.kid, run_id, budget, wrapped
            )
        finally:
            new_keypair.destroy()

        report = tracer.report(
            phase.value,
            Verdict.PASS,
            old_kid=old_kid,
            new_kid=new_keypair.kid,
            run_id=run_id,
        )
        report.context.update(self._sla_context(budget))
        if budget.elapsed > budget.sla_seconds:
            logger.error(f"Revocation of {old_kid} exceeded its {budget.sla_seconds:.0f}s SLA")
        return report

    async def _remove_records(
        self, committed: SigningSecret, revoked_kids: List[str], reason: str
    ) -> List[str]:
        removed = []
        for kid in revoked_kids:
            proof = RemovalProof.from_secret(
                kid, committed, checked_at=self.clock.now(), revocation_reason=reason
            )
            if await self.store.remove(kid, proof):
                removed.append(kid)
        return removed

    async def _flush(self, hook: CacheFlushHook, consumers: List[str]) -> None:
        await asyncio.gather(*(hook.flush(consumer) for consumer in consumers))
        wanted = {ConsumerStatus.STABLE}
        if not self.config.strict_wait:
            wanted.add(ConsumerStatus.LAUNCHING)
        pending = set(consumers)
        while pending:
            for consumer in sorted(pending):
                status = await hook.status(consumer)
                if status is ConsumerStatus.FAILED:
                    raise PropagationError(f"Consumer {consumer} failed to come back after flush")
                if status in wanted:
                    pending.discard(consumer)
            if pending:
                logger.info(f"Waiting on {sorted(pending)} after cache flush")
                await self.clock.sleep(self.config.consumer_poll_interval_seconds)

    async def _verify(
        self,
        service_id: str,
        issuer: str,
        consumers: List[str],
        old_kid: str,
        old_probe: str,
        new_keypair: KeyPair,
    ) -> str:
        document = await self.publisher.serve(issuer)
        if old_kid in document.kids:
            raise PropagationError(f"{old_kid} is still served in the JWKS of {issuer}")
        if new_keypair.kid not in document.kids:
            raise PropagationError(f"{new_keypair.kid} is not served in the JWKS of {issuer}")

        new_probe = sign_token(new_keypair, issuer, self.clock.now(), {"probe": True})
        jwks = document.to_jwks()
        verify_token(new_probe, jwks, issuer=issuer, now=self.clock.now())
        try:
            verify_token(old_probe, jwks, issuer=issuer, now=self.clock.now())
        except jwt.exceptions.InvalidTokenError:
            pass
        else:
            raise PropagationError(f"Token signed by revoked {old_kid} still verifies for {issuer}")

        if self.probe is not None:
            for consumer in consumers:
                if not await self.probe.accepts(consumer, new_probe):
                    raise PropagationError(f"Consumer {consumer} rejects tokens signed by {new_keypair.kid}")
                if await self.probe.accepts(consumer, old_probe):
                    raise PropagationError(f"Consumer {consumer} still accepts tokens signed by {old_kid}")

        rate = self.monitor.error_rate(service_id, self.config.sla_seconds)
        checked = len(consumers) if self.probe is not None else 0
        return f"{new_keypair.kid} accepted, {old_kid} rejected by {checked} consumer(s); error rate {rate:.3f}"

    async def _degraded(
        self,
        service_id: str,
        tracer: StepTracer,
        phase: RevocationPhase,
        old_kid: str,
        new_kid: str,
        run_id: str,
        budget: _Budget,
        exc: KeyLifecycleError,
    ) -> RunReport:
        exc.context.update(tracer.context(phase.value))
        alert = Alert(
            service_id=service_id,
            severity="critical",
            message=(
                f"Revocation of {old_kid} is degraded but safe after {phase.value}: {exc}. "
                "The private key is gone; stale caches may list its public record until their TTL expires."
            ),
            context=dict(exc.context),
            raised_at=self.clock.now(),
        )
        await self.alert_sink.alert(alert)
        report = tracer.report(
            phase.value,
            Verdict.DEGRADED_SAFE,
            old_kid=old_kid,
            new_kid=new_kid,
            run_id=run_id,
            error=exc,
        )
        report.context.update(self._sla_context(budget))
        report.context["error_type"] = type(exc).__name__
        return report

    @staticmethod
    def _sla_context(budget: _Budget) -> dict:
        return {
            "sla_seconds": budget.sla_seconds,
            "within_sla": budget.elapsed <= budget.sla_seconds,
        }
