"""Wires stores, publisher, monitor and orchestrators from configuration."""

from __future__ import annotations

from typing import Dict, List, Optional

from .bootstrap import bootstrap_service
from .clock import Clock, SystemClock
from .config import ConsumerConfig, KeywardenConfig, load_config
from .hooks import (
    AlertSink,
    CacheFlushHook,
    ConfirmationSource,
    HttpCacheFlushHook,
    HttpVerifierProbe,
    TelemetrySource,
    VerifierProbe,
)
from .jwks import JWKSPublisher, RenderedJWKS
from .keys import KeyGenerator
from .models import JWKSDocument, SigningSecret
from .monitor import ConsistencyMonitor
from .revocation import RevocationOrchestrator
from .rotation import RotationOrchestrator
from .store import get_key_store, get_registry
from .store.base import KeyStore, PublicKeyRegistry
from .trace import RunReport


class KeyLifecycleManager:
    """Entry point bundling every lifecycle operation for a deployment."""

    def __init__(
        self,
        config: KeywardenConfig,
        key_store: KeyStore,
        registry: PublicKeyRegistry,
        clock: Optional[Clock] = None,
        generator: Optional[KeyGenerator] = None,
        flush_hook: Optional[CacheFlushHook] = None,
        probe: Optional[VerifierProbe] = None,
        confirmation: Optional[ConfirmationSource] = None,
        telemetry: Optional[TelemetrySource] = None,
        alert_sink: Optional[AlertSink] = None,
        monitor: Optional[ConsistencyMonitor] = None,
    ) -> None:
        self.config = config
        self.key_store = key_store
        self.registry = registry
        self.clock = clock or SystemClock()
        self.generator = generator or KeyGenerator()
        self.monitor = monitor or ConsistencyMonitor(clock=self.clock, alert_sink=alert_sink)
        self.publisher = JWKSPublisher(
            registry,
            key_store,
            clock=self.clock,
            cache_ttl_seconds=config.jwks.cache_ttl_seconds,
            service_for=config.service_for,
        )
        consumers = self._consumer_map()
        if flush_hook is None and any(c.flush_url for c in consumers.values()):
            flush_hook = HttpCacheFlushHook(consumers, timeout=config.call_timeout_seconds)
        if probe is None and any(c.verify_url for c in consumers.values()):
            probe = HttpVerifierProbe(consumers, timeout=config.call_timeout_seconds)

        self.rotation = RotationOrchestrator(
            key_store,
            registry,
            self.publisher,
            self.monitor,
            generator=self.generator,
            clock=self.clock,
            config=config.rotation,
            jwks_config=config.jwks,
            call_timeout=config.call_timeout_seconds,
            issuer_for=config.issuer_for,
            confirmation=confirmation,
            telemetry=telemetry,
        )
        self.revocation = RevocationOrchestrator(
            key_store,
            registry,
            self.publisher,
            flush_hook=flush_hook,
            probe=probe,
            monitor=self.monitor,
            generator=self.generator,
            clock=self.clock,
            config=config.revocation,
            jwks_config=config.jwks,
            call_timeout=config.call_timeout_seconds,
            issuer_for=config.issuer_for,
            consumers_for=self._consumer_names,
            alert_sink=alert_sink,
            conflict_attempts=config.rotation.conflict_attempts,
        )

    @classmethod
    def from_config(cls, config: Optional[KeywardenConfig] = None, **kwargs) -> "KeyLifecycleManager":
        """Build a manager and its store backend.

        An explicit ``config`` selects its own backend. Without one the
        environment configuration and the cached store instances are used.
        """
        explicit = config
        config = config or load_config()
        key_store = kwargs.pop("key_store", None) or get_key_store(config=explicit)
        registry = kwargs.pop("registry", None) or get_registry(config=explicit)
        return cls(config, key_store, registry, **kwargs)

    def _consumer_map(self) -> Dict[str, ConsumerConfig]:
        return {
            consumer.name: consumer
            for service in self.config.services.values()
            for consumer in service.consumers
        }

    def _consumer_names(self, service_id: str) -> List[str]:
        return [consumer.name for consumer in self.config.consumers_for(service_id)]

    async def bootstrap(self, service_id: str, dry_run: bool = False) -> RunReport:
        return await bootstrap_service(
            self.key_store,
            self.registry,
            service_id,
            issuer=self.config.issuer_for(service_id),
            generator=self.generator,
            clock=self.clock,
            jwks_config=self.config.jwks,
            call_timeout=self.config.call_timeout_seconds,
            dry_run=dry_run,
        )

    async def rotate(self, service_id: str, dry_run: bool = False) -> RunReport:
        return await self.rotation.rotate(service_id, dry_run=dry_run)

    async def revoke(
        self, service_id: str, reason: str, kid: Optional[str] = None, dry_run: bool = False
    ) -> RunReport:
        return await self.revocation.revoke(service_id, reason, kid=kid, dry_run=dry_run)

    async def jwks(self, service_id: str) -> JWKSDocument:
        return await self.publisher.serve(self.config.issuer_for(service_id))

    async def render_jwks(self, service_id: str) -> RenderedJWKS:
        return await self.publisher.render(self.config.issuer_for(service_id))

    async def status(self, service_id: str) -> SigningSecret:
        return await self.key_store.get_secret(service_id)
