"""Effect executor for standard dual-key rotation."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Type, TypeVar

from ..clock import Clock, SystemClock
from ..config import JwksConfig, RotationConfig
from ..errors import (
    AlreadyInProgressError,
    GenerationError,
    InvalidTransitionError,
    KeyLifecycleError,
    PropagationError,
)
from ..gateway import StoreGateway
from ..hooks import Alert, ConfirmationSource, TelemetrySource
from ..jwks import JWKSSource
from ..keys import KeyGenerator, KeyPair
from ..models import PublicKeyRecord, RemovalProof, RotationMarker, SigningSecret
from ..monitor import ConsistencyMonitor
from ..store.base import KeyStore, PublicKeyRegistry
from ..trace import RunReport, StepTracer, Verdict
from ..utils.timeouts import with_timeout
from .state import (
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
    RotationEvent,
    RotationPhase,
    RotationState,
    Stable,
    Switched,
    SwitchCommitted,
    ThresholdBreached,
    can_rollback,
    state_from_secret,
    transition,
)

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=RotationState)


def _expect(state: RotationState, kind: Type[S]) -> S:
    if not isinstance(state, kind):
        raise InvalidTransitionError(f"Expected {kind.__name__}, rotation is in {state.phase.value}")
    return state


@dataclass
class _RotationRun:
    service_id: str
    issuer: str
    run_id: str
    tracer: StepTracer
    state: RotationState
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    new_keypair: Optional[KeyPair] = None
    resumed: bool = False
    switched_at: Optional[datetime] = None
    monitoring_cancelled: bool = False
    rollback_cause: Optional[KeyLifecycleError] = None
    alerts: List[Alert] = field(default_factory=list)

    @property
    def old_kid(self) -> Optional[str]:
        return getattr(self.state, "old_kid", None) or getattr(self.state, "active_kid", None)

    @property
    def new_kid(self) -> Optional[str]:
        return getattr(self.state, "new_kid", None)


class RotationOrchestrator:
    """Runs the dual-key rotation protocol for one service at a time.

    The orchestrator never switches signers before it has seen both kids in
    the published JWKS and waited out the propagation window. Anything that
    goes wrong before the switch is rolled back; nothing after the switch
    is.
    """

    def __init__(
        self,
        key_store: KeyStore,
        registry: PublicKeyRegistry,
        publisher: JWKSSource,
        monitor: ConsistencyMonitor,
        generator: Optional[KeyGenerator] = None,
        clock: Optional[Clock] = None,
        config: Optional[RotationConfig] = None,
        jwks_config: Optional[JwksConfig] = None,
        call_timeout: float = 10,
        issuer_for: Optional[Callable[[str], str]] = None,
        confirmation: Optional[ConfirmationSource] = None,
        telemetry: Optional[TelemetrySource] = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.config = config or RotationConfig()
        self.jwks_config = jwks_config or JwksConfig()
        self.store = StoreGateway(
            key_store,
            registry,
            self.clock,
            call_timeout=call_timeout,
            conflict_attempts=self.config.conflict_attempts,
        )
        self.publisher = publisher
        self.monitor = monitor
        self.generator = generator or KeyGenerator()
        self.call_timeout = call_timeout
        self._issuer_for = issuer_for or (lambda service_id: service_id)
        self.confirmation = confirmation
        self.telemetry = telemetry
        self._runs: Dict[str, _RotationRun] = {}
        self._effects = {
            Generating: self._generate_and_publish,
            DualPublished: self._open_gate,
            AwaitingPropagation: self._await_propagation,
            Switched: self._start_monitoring,
            Monitoring: self._monitor_and_retire,
            RollingBack: self._roll_back,
        }

    # ------------------------------------------------------------------
    # Public API
    def current_state(self, service_id: str) -> Optional[RotationState]:
        run = self._runs.get(service_id)
        return run.state if run else None

    def cancel(self, service_id: str) -> bool:
        """Request cancellation of the running rotation for ``service_id``.

        Before SWITCHED this resolves to a rollback; during MONITORING it
        only ends the observation early. Returns ``False`` if nothing is
        running.
        """
        run = self._runs.get(service_id)
        if run is None:
            return False
        run.cancel.set()
        logger.warning(f"Cancellation requested for rotation of {service_id} in {run.state.phase.value}")
        return True

    async def rotate(
        self,
        service_id: str,
        run_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> RunReport:
        """Rotate the signing key of ``service_id``.

        Raises :class:`AlreadyInProgressError` when another rotation holds a
        fresh marker and :class:`SecretNotFoundError` when the service was
        never bootstrapped. Every other outcome is returned as a report.
        """
        tracer = StepTracer(self.clock, "rotate", service_id)
        run_id = run_id or uuid.uuid4().hex
        issuer = self._issuer_for(service_id)

        if dry_run:
            return await self._plan(service_id, run_id, tracer)

        async with tracer.step("acquire_marker", RotationPhase.STABLE.value) as handle:
            secret = await self._acquire(service_id, run_id)
            handle.detail = f"run_id={run_id}"

        run = _RotationRun(
            service_id=service_id,
            issuer=issuer,
            run_id=run_id,
            tracer=tracer,
            state=state_from_secret(secret),
        )
        self._runs[service_id] = run
        try:
            return await self._drive(run, secret)
        finally:
            self._runs.pop(service_id, None)
            if run.new_keypair is not None:
                run.new_keypair.destroy()
            # The marker is cleared on every exit path, including cancellation.
            await asyncio.shield(self._release(run))

    # ------------------------------------------------------------------
    # Driver
    def _advance(self, run: _RotationRun, event: RotationEvent) -> None:
        previous = run.state.phase
        run.state = transition(run.state, event)
        if run.state.phase != previous:
            logger.info(
                f"Rotation {run.run_id} for {run.service_id}: {previous.value} -> {run.state.phase.value}"
            )

    async def _drive(self, run: _RotationRun, secret: SigningSecret) -> RunReport:
        old_kid = run.old_kid
        try:
            if isinstance(run.state, Stable):
                self._advance(run, Begin())
            else:
                run.resumed = True
                await self._resume(run, secret)
            while not isinstance(run.state, Stable) and not run.monitoring_cancelled:
                await self._effects[type(run.state)](run)
        except asyncio.CancelledError:
            if can_rollback(run.state):
                self._advance(run, RollbackRequested(reason="rotation task cancelled"))
                await asyncio.shield(self._roll_back(run))
            raise
        except Exception as exc:
            report = await self._handle_failure(run, old_kid, exc)
            if not isinstance(exc, KeyLifecycleError):
                raise
            return report

        if run.rollback_cause is not None:
            return run.tracer.report(
                RotationPhase.STABLE.value,
                Verdict.ROLLED_BACK,
                old_kid=old_kid,
                new_kid=run.new_kid or (run.new_keypair.kid if run.new_keypair else None),
                run_id=run.run_id,
                error=run.rollback_cause,
            )
        final_state = run.state.phase.value
        return run.tracer.report(
            final_state,
            Verdict.PASS,
            old_kid=old_kid,
            new_kid=run.state.active_kid if isinstance(run.state, Stable) else run.new_kid,
            run_id=run.run_id,
        )

    async def _handle_failure(
        self, run: _RotationRun, old_kid: Optional[str], exc: Exception
    ) -> RunReport:
        failed_state = run.state.phase.value
        context = run.tracer.context(failed_state)
        new_kid = run.new_kid or (run.new_keypair.kid if run.new_keypair else None)
        if isinstance(exc, KeyLifecycleError):
            exc.context.update(context)

        verdict = Verdict.FAILED
        if can_rollback(run.state):
            self._advance(run, RollbackRequested(reason=str(exc)))
            try:
                await self._roll_back(run)
                # Generation failures leave nothing to undo and are reported as fatal.
                if not isinstance(exc, GenerationError):
                    verdict = Verdict.ROLLED_BACK
            except KeyLifecycleError as rollback_exc:
                logger.error(f"Rollback of {run.service_id} failed: {rollback_exc}")
        elif isinstance(run.state, RollingBack):
            logger.error(f"Rollback of {run.service_id} failed: {exc}")
        else:
            logger.error(
                f"Rotation of {run.service_id} failed in {failed_state}; "
                "no automatic rollback past SWITCHED"
            )
        report = run.tracer.report(
            run.state.phase.value,
            verdict,
            old_kid=old_kid,
            new_kid=new_kid,
            run_id=run.run_id,
            error=exc,
        )
        report.context.update({"failed_state": failed_state, "error_type": type(exc).__name__})
        return report

    # ------------------------------------------------------------------
    # Marker handling
    async def _acquire(self, service_id: str, run_id: str) -> SigningSecret:
        def guard(current: SigningSecret) -> None:
            marker = current.rotation
            if marker is None or marker.run_id == run_id:
                return
            if not marker.is_abandoned(self.clock.now(), self.config.marker_grace_seconds):
                raise AlreadyInProgressError(
                    f"Rotation {marker.run_id} for {service_id} started at {marker.started_at.isoformat()}",
                    context={"run_id": marker.run_id, "started_at": marker.started_at.isoformat()},
                )
            logger.warning(f"Taking over abandoned rotation {marker.run_id} for {service_id}")

        def mutate(current: SigningSecret) -> SigningSecret:
            return current.with_marker(
                RotationMarker(run_id=run_id, started_at=self.clock.now(), target_kid=current.pending_kid)
            )

        return await self.store.commit(
            service_id,
            mutate,
            lambda current: False,
            "acquire rotation marker",
            guard=guard,
        )

    def _owned_by(self, run: _RotationRun) -> Callable[[SigningSecret], None]:
        def guard(current: SigningSecret) -> None:
            if current.rotation is None or current.rotation.run_id != run.run_id:
                raise AlreadyInProgressError(
                    f"Rotation {run.run_id} for {run.service_id} no longer holds the marker"
                )

        return guard

    async def _release(self, run: _RotationRun) -> None:
        def mine(current: SigningSecret) -> bool:
            return current.rotation is not None and current.rotation.run_id == run.run_id

        try:
            await self.store.commit(
                run.service_id,
                lambda current: current.with_marker(None),
                lambda current: not mine(current),
                "release rotation marker",
            )
        except KeyLifecycleError as exc:
            logger.error(
                f"Could not clear rotation marker {run.run_id} for {run.service_id}: {exc}; "
                f"it will be treated as abandoned after {self.config.marker_grace_seconds}s"
            )

    async def _plan(self, service_id: str, run_id: str, tracer: StepTracer) -> RunReport:
        async with tracer.step("plan", RotationPhase.STABLE.value) as handle:
            secret = await self.store.get_secret(service_id)
            marker = secret.rotation
            if marker and not marker.is_abandoned(self.clock.now(), self.config.marker_grace_seconds):
                raise AlreadyInProgressError(f"Rotation {marker.run_id} for {service_id} is in progress")
            action = (
                f"resume pending {secret.pending_kid}"
                if secret.pending_kid
                else f"generate a new key to replace {secret.active_kid}"
            )
            handle.detail = (
                f"would {action}; propagation window {self.config.propagation_window_seconds}s, "
                f"monitoring window {self.config.monitoring_window_seconds}s"
            )
        return tracer.report(
            RotationPhase.STABLE.value,
            Verdict.PASS,
            old_kid=secret.active_kid,
            new_kid=secret.pending_kid,
            run_id=run_id,
            dry_run=True,
        )

    # ------------------------------------------------------------------
    # Effects
    async def _resume(self, run: _RotationRun, secret: SigningSecret) -> None:
        async with run.tracer.step("resume", run.state.phase.value) as handle:
            keypair = secret.pending_keypair()
            if keypair is None:
                raise KeyLifecycleError(f"No pending key to resume for {run.service_id}")
            run.new_keypair = keypair
            # Registration is idempotent on kid; this covers a crash between
            # the secret write and the registry write of an earlier run.
            await self.store.register(self._record_for(run, keypair))
            handle.detail = f"resuming pending {keypair.kid} instead of minting a new key"

    def _record_for(self, run: _RotationRun, keypair: KeyPair) -> PublicKeyRecord:
        return PublicKeyRecord.from_keypair(
            keypair,
            issuer=run.issuer,
            created_at=self.clock.now(),
            ttl=timedelta(days=self.jwks_config.key_ttl_days),
        )

    async def _generate_and_publish(self, run: _RotationRun) -> None:
        async with run.tracer.step("generate", run.state.phase.value) as handle:
            taken = {r.kid for r in await self.store.list_records(run.issuer)}
            run.new_keypair = self.generator.generate(run.service_id, self.clock.now(), taken=taken)
            handle.detail = f"new kid {run.new_keypair.kid}"

        keypair = run.new_keypair
        async with run.tracer.step("dual_publish", run.state.phase.value) as handle:
            await self.store.register(self._record_for(run, keypair))
            await self.store.commit(
                run.service_id,
                lambda current: current.with_pending(keypair).with_marker(
                    current.rotation.model_copy(update={"target_kid": keypair.kid})
                ),
                lambda current: current.pending_kid == keypair.kid,
                "dual publish",
                guard=self._owned_by(run),
            )
            handle.detail = f"{run.old_kid} signing, {keypair.kid} pending"
        self._advance(run, DualPublishCommitted(new_kid=keypair.kid))

    async def _open_gate(self, run: _RotationRun) -> None:
        self._advance(run, GateOpened())

    async def _await_propagation(self, run: _RotationRun) -> None:
        state = _expect(run.state, AwaitingPropagation)
        if not state.verified:
            await self._verify_propagation(run, state)
        elif not state.window_elapsed:
            await self._wait_propagation_window(run, state)
        else:
            await self._switch(run, state)

    async def _verify_propagation(self, run: _RotationRun, state: AwaitingPropagation) -> None:
        async with run.tracer.step("propagation_gate", state.phase.value) as handle:
            polls = self.config.propagation_polls
            for poll in range(1, polls + 1):
                if run.cancel.is_set():
                    handle.detail = "cancelled"
                    self._advance(run, RollbackRequested(reason="cancelled before switch"))
                    return
                try:
                    document = await with_timeout(
                        self.publisher.serve(run.issuer), self.call_timeout, f"serve({run.issuer})"
                    )
                except KeyLifecycleError as exc:
                    logger.warning(f"JWKS poll {poll}/{polls} for {run.issuer} failed: {exc}")
                else:
                    if document.contains(state.old_kid, state.new_kid):
                        handle.detail = f"both kids visible after {poll} poll(s)"
                        self._advance(run, PropagationObserved(polls=poll))
                        return
                    logger.info(
                        f"JWKS for {run.issuer} lists {document.kids}; waiting for {state.new_kid} "
                        f"({poll}/{polls})"
                    )
                if poll < polls:
                    await self.clock.sleep(self.config.poll_interval_seconds)
            handle.detail = f"{state.new_kid} not visible after {polls} polls"
        run.rollback_cause = PropagationError(
            f"{state.new_kid} not visible in JWKS for {run.issuer} after {polls} polls",
            context=run.tracer.context(state.phase.value),
        )
        self._advance(run, PropagationMissed(polls=polls))

    async def _wait_propagation_window(self, run: _RotationRun, state: AwaitingPropagation) -> None:
        window = self.config.propagation_window_seconds
        async with run.tracer.step("propagation_wait", state.phase.value) as handle:
            cancelled = await self._wait(run, window)
            handle.detail = "cancelled" if cancelled else f"waited {window}s for verifier caches"
        if cancelled:
            self._advance(run, RollbackRequested(reason="cancelled during propagation wait"))
            return

        if self.confirmation is not None and self.config.require_confirmation:
            async with run.tracer.step("operator_confirmation", state.phase.value) as handle:
                try:
                    approved = await asyncio.wait_for(
                        self.confirmation.wait_for_confirmation(
                            run.service_id, state.old_kid, state.new_kid
                        ),
                        self.config.confirmation_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    approved = False
                    handle.detail = "no confirmation before timeout"
                else:
                    handle.detail = "approved" if approved else "denied"
            if not approved:
                self._advance(run, RollbackRequested(reason=f"operator confirmation {handle.detail}"))
                return

        self._advance(run, PropagationWindowElapsed())

    async def _switch(self, run: _RotationRun, state: AwaitingPropagation) -> None:
        async with run.tracer.step("switch", state.phase.value) as handle:
            await self.store.commit(
                run.service_id,
                lambda current: current.promoted(),
                lambda current: current.active_kid == state.new_kid,
                "switch active key",
                guard=self._switch_guard(run, state.new_kid),
            )
            run.switched_at = self.clock.now()
            handle.detail = f"{state.new_kid} is now the only signer"
        self._advance(run, SwitchCommitted(at=run.switched_at))

    def _switch_guard(self, run: _RotationRun, new_kid: str) -> Callable[[SigningSecret], None]:
        owned = self._owned_by(run)

        def guard(current: SigningSecret) -> None:
            owned(current)
            if current.pending_kid != new_kid:
                raise KeyLifecycleError(f"Pending slot of {run.service_id} no longer holds {new_kid}")

        return guard

    async def _start_monitoring(self, run: _RotationRun) -> None:
        self._advance(run, MonitoringStarted())

    async def _monitor_and_retire(self, run: _RotationRun) -> None:
        state = _expect(run.state, Monitoring)
        window = self.config.monitoring_window_seconds
        interval = max(self.config.monitoring_interval_seconds, 0.001)
        context = {"run_id": run.run_id, "old_kid": state.old_kid, "new_kid": state.new_kid}

        async with run.tracer.step("monitoring", state.phase.value) as handle:
            waited = 0.0
            while waited < window:
                slice_seconds = min(interval, window - waited)
                if await self._wait(run, slice_seconds):
                    run.monitoring_cancelled = True
                    break
                waited += slice_seconds
                if self.telemetry is not None:
                    await self.monitor.ingest(
                        self.telemetry,
                        run.service_id,
                        self.clock.now() - timedelta(seconds=slice_seconds),
                    )
                if not run.alerts:
                    alert = await self.monitor.check(
                        run.service_id,
                        self._since_switch(state, window),
                        self.config.error_rate_threshold,
                        context,
                    )
                    if alert is not None:
                        run.alerts.append(alert)
                        self._advance(run, ThresholdBreached(error_rate=alert.error_rate or 0.0))
            rate = self.monitor.error_rate(run.service_id, self._since_switch(state, window))
            handle.detail = f"error rate {rate:.3f} over {waited:.0f}s, {len(run.alerts)} alert(s)"
            if run.monitoring_cancelled:
                handle.detail += "; cancelled, previous key left to expire"

        if run.monitoring_cancelled:
            return
        await self._retire(run)

    def _since_switch(self, state: Monitoring, window: float) -> float:
        """Observation window clipped to traffic after the switch."""
        elapsed = (self.clock.now() - state.switched_at).total_seconds()
        return max(0.0, min(window, elapsed))

    async def _retire(self, run: _RotationRun) -> None:
        state = _expect(run.state, Monitoring)
        async with run.tracer.step("retire", state.phase.value) as handle:
            current = await self.store.get_secret(run.service_id)
            proof = RemovalProof.from_secret(
                state.old_kid,
                current,
                checked_at=self.clock.now(),
                superseded_at=state.switched_at,
                overlap_seconds=self.config.monitoring_window_seconds,
            )
            removed = await self.store.remove(state.old_kid, proof)
            purged = await self.store.purge_expired(run.issuer, self.clock.now(), set(current.kids))
            handle.detail = f"retired {state.old_kid}" if removed else f"{state.old_kid} already gone"
            if purged:
                handle.detail += f"; purged expired {purged}"
        self._advance(run, Retired())

    async def _roll_back(self, run: _RotationRun) -> None:
        state = _expect(run.state, RollingBack)
        new_kid = state.new_kid or (run.new_keypair.kid if run.new_keypair else None)
        async with run.tracer.step("rollback", state.phase.value) as handle:
            handle.detail = state.reason
            if new_kid is not None:
                current = await self.store.commit(
                    run.service_id,
                    lambda current: current.without_pending(),
                    lambda current: current.pending_kid != new_kid,
                    "drop pending key",
                )
                proof = RemovalProof.from_secret(new_kid, current, checked_at=self.clock.now())
                await self.store.remove(new_kid, proof)
            if run.new_keypair is not None:
                run.new_keypair.destroy()
        if run.rollback_cause is None:
            run.rollback_cause = KeyLifecycleError(
                f"Rotation rolled back: {state.reason}",
                context=run.tracer.context(state.phase.value),
            )
        self._advance(run, RollbackCompleted())

    async def _wait(self, run: _RotationRun, seconds: float) -> bool:
        """Suspend for ``seconds`` unless cancelled first. Returns ``True`` on cancellation."""
        if run.cancel.is_set():
            return True
        sleeper = asyncio.ensure_future(self.clock.sleep(seconds))
        canceller = asyncio.ensure_future(run.cancel.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, canceller):
                if not task.done():
                    task.cancel()
        return run.cancel.is_set()
