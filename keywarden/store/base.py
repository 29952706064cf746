"""Port definitions for the signing-secret store and public-key registry."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from ..errors import RemovalNotPermittedError
from ..models import PublicKeyRecord, RemovalProof, SigningSecret


class KeyStore(Protocol):
    """Versioned read/replace of one signing secret per service."""

    async def get_secret(self, service_id: str) -> SigningSecret:
        """Return the current secret or raise ``SecretNotFoundError``."""

    async def put_secret(
        self,
        service_id: str,
        secret: SigningSecret,
        expected_token: Optional[str],
    ) -> SigningSecret:
        """Atomically replace the secret.

        ``expected_token`` must equal the token of the stored secret, or be
        ``None`` when creating the secret for the first time. A mismatch
        raises ``ConflictError`` and leaves the store unchanged. Returns the
        stored secret carrying its new concurrency token.
        """


class PublicKeyRegistry(Protocol):
    """Durable store of public-key records keyed by kid."""

    async def register_public_key(self, record: PublicKeyRecord) -> PublicKeyRecord:
        """Insert ``record``; re-registering identical material is a no-op."""

    async def get_public_key(self, kid: str) -> Optional[PublicKeyRecord]:
        """Return the record for ``kid`` if present."""

    async def list_public_keys(self, issuer: str) -> list[PublicKeyRecord]:
        """Return every record for ``issuer``, expired ones included."""

    async def remove_public_key(self, kid: str, proof: RemovalProof) -> bool:
        """Remove ``kid`` once ``proof`` shows it is safe. Returns whether a row was removed."""

    async def purge_expired(self, issuer: str, now: datetime, keep: set[str]) -> list[str]:
        """Delete expired records for ``issuer`` except kids in ``keep``."""


def check_removal(kid: str, proof: RemovalProof) -> None:
    """Raise :class:`RemovalNotPermittedError` unless ``proof`` allows removing ``kid``."""
    if proof.kid != kid:
        raise RemovalNotPermittedError(f"Proof was issued for {proof.kid}, not {kid}")
    if kid in (proof.active_kid, proof.pending_kid):
        raise RemovalNotPermittedError(f"{kid} is still active or pending")
    if proof.revocation_reason or proof.superseded_at is None:
        return
    if proof.checked_at - proof.superseded_at < timedelta(seconds=proof.overlap_seconds):
        raise RemovalNotPermittedError(f"Overlap window for {kid} has not elapsed")
