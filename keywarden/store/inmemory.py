"""In-memory implementations of the key store and public-key registry."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Dict, Optional

from ..errors import ConflictError, RegistryConflictError, SecretNotFoundError
from ..models import PublicKeyRecord, RemovalProof, SigningSecret
from .base import KeyStore, PublicKeyRegistry, check_removal


class InMemoryKeyStore(KeyStore):
    """Keep signing secrets in local memory.

    Useful for tests or single-process tooling. Secrets are held in their
    serialized document form so callers never share mutable state with the
    store.
    """

    def __init__(self) -> None:
        self._documents: Dict[str, tuple[dict, str]] = {}
        self._lock = asyncio.Lock()

    async def get_secret(self, service_id: str) -> SigningSecret:
        entry = self._documents.get(service_id)
        if entry is None:
            raise SecretNotFoundError(service_id)
        document, token = entry
        return SigningSecret.from_document(document, token)

    async def put_secret(
        self,
        service_id: str,
        secret: SigningSecret,
        expected_token: Optional[str],
    ) -> SigningSecret:
        async with self._lock:
            current = self._documents.get(service_id)
            current_token = current[1] if current else None
            if current_token != expected_token:
                raise ConflictError(
                    f"Stale concurrency token for {service_id}",
                    context={"expected": expected_token, "actual": current_token},
                )
            token = uuid.uuid4().hex
            self._documents[service_id] = (secret.to_document(), token)
        return secret.model_copy(update={"concurrency_token": token})

    async def list_services(self) -> list[str]:
        return sorted(self._documents)


class InMemoryPublicKeyRegistry(PublicKeyRegistry):
    """Store public-key records in local memory."""

    def __init__(self) -> None:
        self._records: Dict[str, PublicKeyRecord] = {}

    async def register_public_key(self, record: PublicKeyRecord) -> PublicKeyRecord:
        existing = self._records.get(record.kid)
        if existing is not None:
            if not existing.same_material(record):
                raise RegistryConflictError(f"{record.kid} already registered with different material")
            return existing
        self._records[record.kid] = record.model_copy()
        return record

    async def get_public_key(self, kid: str) -> Optional[PublicKeyRecord]:
        return self._records.get(kid)

    async def list_public_keys(self, issuer: str) -> list[PublicKeyRecord]:
        return [r for r in self._records.values() if r.issuer == issuer]

    async def remove_public_key(self, kid: str, proof: RemovalProof) -> bool:
        check_removal(kid, proof)
        return self._records.pop(kid, None) is not None

    async def purge_expired(self, issuer: str, now: datetime, keep: set[str]) -> list[str]:
        purged = [
            kid
            for kid, record in self._records.items()
            if record.issuer == issuer and kid not in keep and record.is_expired(now)
        ]
        for kid in purged:
            del self._records[kid]
        return purged
