"""First-time provisioning of a service's signing key."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Optional

from .clock import Clock, SystemClock
from .config import JwksConfig
from .errors import ConflictError, SecretNotFoundError
from .gateway import StoreGateway
from .keys import KeyGenerator
from .models import PublicKeyRecord, RemovalProof, SigningSecret
from .store.base import KeyStore, PublicKeyRegistry
from .trace import RunReport, StepTracer, Verdict

logger = logging.getLogger(__name__)


async def bootstrap_service(
    key_store: KeyStore,
    registry: PublicKeyRegistry,
    service_id: str,
    issuer: Optional[str] = None,
    generator: Optional[KeyGenerator] = None,
    clock: Optional[Clock] = None,
    jwks_config: Optional[JwksConfig] = None,
    call_timeout: float = 10,
    dry_run: bool = False,
) -> RunReport:
    """Give ``service_id`` its first signing key.

    The public record is registered before the secret is created so the
    kid is servable before it can sign anything. The secret is written
    create-only: if another bootstrap won the race, the freshly registered
    record is dropped and the existing secret is reported unchanged.
    Re-running against a bootstrapped service is a no-op.
    """
    clock = clock or SystemClock()
    generator = generator or KeyGenerator()
    jwks_config = jwks_config or JwksConfig()
    issuer = issuer or service_id
    store = StoreGateway(key_store, registry, clock, call_timeout=call_timeout)
    tracer = StepTracer(clock, "bootstrap", service_id)
    run_id = uuid.uuid4().hex

    try:
        existing: Optional[SigningSecret] = await store.get_secret(service_id)
    except SecretNotFoundError:
        existing = None

    if existing is not None:
        tracer.skip("bootstrap", "STABLE", f"{service_id} already signs with {existing.active_kid}")
        return tracer.report("STABLE", Verdict.PASS, new_kid=existing.active_kid, run_id=run_id)

    if dry_run:
        tracer.skip("bootstrap", "STABLE", f"would generate the first key for {service_id}")
        return tracer.report("STABLE", Verdict.PASS, run_id=run_id, dry_run=True)

    taken = {r.kid for r in await store.list_records(issuer)}
    async with tracer.step("generate", "GENERATING") as handle:
        keypair = generator.generate(service_id, clock.now(), taken=taken)
        handle.detail = f"kid {keypair.kid}"

    with keypair:
        async with tracer.step("publish", "GENERATING"):
            await store.register(
                PublicKeyRecord.from_keypair(
                    keypair,
                    issuer=issuer,
                    created_at=clock.now(),
                    ttl=timedelta(days=jwks_config.key_ttl_days),
                )
            )

        async with tracer.step("create_secret", "GENERATING") as handle:
            try:
                created = await store.put_secret(service_id, SigningSecret.for_keypair(keypair), None)
            except ConflictError:
                winner = await store.get_secret(service_id)
                logger.warning(
                    f"{service_id} was bootstrapped concurrently with {winner.active_kid}; "
                    f"dropping {keypair.kid}"
                )
                await store.remove(
                    keypair.kid, RemovalProof.from_secret(keypair.kid, winner, checked_at=clock.now())
                )
                handle.detail = f"lost race to {winner.active_kid}"
                return tracer.report("STABLE", Verdict.PASS, new_kid=winner.active_kid, run_id=run_id)
            handle.detail = f"{created.active_kid} active"

    return tracer.report("STABLE", Verdict.PASS, new_kid=created.active_kid, run_id=run_id)
