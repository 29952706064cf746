"""Time-boxed access to the key store and registry shared by all orchestrators."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from .clock import Clock
from .errors import ConflictError, OperationTimeoutError
from .models import PublicKeyRecord, RemovalProof, SigningSecret
from .store.base import KeyStore, PublicKeyRegistry
from .utils.retry import retry_on_conflict
from .utils.timeouts import with_timeout

logger = logging.getLogger(__name__)

Mutation = Callable[[SigningSecret], SigningSecret]
Predicate = Callable[[SigningSecret], bool]


class StoreGateway:
    """Wraps every store call in a timeout and implements read-check-replace commits."""

    def __init__(
        self,
        key_store: KeyStore,
        registry: PublicKeyRegistry,
        clock: Clock,
        call_timeout: float = 10,
        conflict_attempts: int = 3,
    ) -> None:
        self.key_store = key_store
        self.registry = registry
        self.clock = clock
        self.call_timeout = call_timeout
        self.conflict_attempts = conflict_attempts

    async def get_secret(self, service_id: str) -> SigningSecret:
        return await with_timeout(
            self.key_store.get_secret(service_id), self.call_timeout, f"get_secret({service_id})"
        )

    async def put_secret(
        self, service_id: str, secret: SigningSecret, expected_token: Optional[str]
    ) -> SigningSecret:
        return await with_timeout(
            self.key_store.put_secret(service_id, secret, expected_token),
            self.call_timeout,
            f"put_secret({service_id})",
        )

    async def register(self, record: PublicKeyRecord) -> PublicKeyRecord:
        return await with_timeout(
            self.registry.register_public_key(record),
            self.call_timeout,
            f"register_public_key({record.kid})",
        )

    async def get_record(self, kid: str) -> Optional[PublicKeyRecord]:
        return await with_timeout(
            self.registry.get_public_key(kid), self.call_timeout, f"get_public_key({kid})"
        )

    async def list_records(self, issuer: str) -> list[PublicKeyRecord]:
        return await with_timeout(
            self.registry.list_public_keys(issuer), self.call_timeout, f"list_public_keys({issuer})"
        )

    async def remove(self, kid: str, proof: RemovalProof) -> bool:
        return await with_timeout(
            self.registry.remove_public_key(kid, proof),
            self.call_timeout,
            f"remove_public_key({kid})",
        )

    async def purge_expired(self, issuer: str, now: datetime, keep: set[str]) -> list[str]:
        return await with_timeout(
            self.registry.purge_expired(issuer, now, keep),
            self.call_timeout,
            f"purge_expired({issuer})",
        )

    async def commit(
        self,
        service_id: str,
        mutate: Mutation,
        is_committed: Predicate,
        description: str,
        guard: Optional[Callable[[SigningSecret], None]] = None,
    ) -> SigningSecret:
        """Atomically apply ``mutate`` to the current secret.

        Every attempt re-reads the secret first: if ``is_committed`` already
        holds (for instance because an earlier attempt timed out after the
        write landed) the current secret is returned without writing again.
        ``guard`` may raise to abort before writing. Conflicts and timeouts
        are retried a bounded number of times.
        """

        async def attempt() -> SigningSecret:
            current = await self.get_secret(service_id)
            if is_committed(current):
                return current
            if guard is not None:
                guard(current)
            return await self.put_secret(service_id, mutate(current), current.concurrency_token)

        return await retry_on_conflict(
            attempt,
            self.clock,
            attempts=self.conflict_attempts,
            description=f"{description} for {service_id}",
            retry_on=(ConflictError, OperationTimeoutError),
        )
