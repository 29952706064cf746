"""Data models for signing secrets, public-key records and JWKS documents."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator

from .keys import ALGORITHM, CURVE_NAME, KeyPair

SCHEMA_VERSION = 1


class Revocation(BaseModel):
    """Tag left on a signing secret by an emergency revocation."""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: datetime
    reason: str
    revoked_kid: str = Field(alias="revokedKid")


class RotationMarker(BaseModel):
    """Rotation-in-progress marker held inside the signing secret."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(alias="runId")
    started_at: datetime = Field(alias="startedAt")
    target_kid: Optional[str] = Field(default=None, alias="targetKid")

    def is_abandoned(self, now: datetime, grace_seconds: float) -> bool:
        return now - self.started_at > timedelta(seconds=grace_seconds)


class SigningSecret(BaseModel):
    """The single mutable per-service aggregate kept in the secret store.

    ``concurrency_token`` is assigned by the store on every successful write
    and is never part of the persisted document.
    """

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(default=SCHEMA_VERSION, alias="schemaVersion")
    active_kid: str = Field(alias="activeKid")
    private_key: SecretStr = Field(alias="privateKey")
    pending_kid: Optional[str] = Field(default=None, alias="pendingKid")
    pending_private_key: Optional[SecretStr] = Field(default=None, alias="pendingPrivateKey")
    revocation: Optional[Revocation] = None
    rotation: Optional[RotationMarker] = None
    concurrency_token: Optional[str] = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _check_slots(self) -> "SigningSecret":
        if (self.pending_kid is None) != (self.pending_private_key is None):
            raise ValueError("pendingKid and pendingPrivateKey must be set together")
        if self.pending_kid is not None and self.pending_kid == self.active_kid:
            raise ValueError("pendingKid must differ from activeKid")
        return self

    # ------------------------------------------------------------------
    # Wire form
    def to_document(self) -> Dict[str, Any]:
        """Serialize to the persisted schema, revealing key material."""
        data = self.model_dump(by_alias=True, mode="json", exclude_none=True)
        data["privateKey"] = self.private_key.get_secret_value()
        if self.pending_private_key is not None:
            data["pendingPrivateKey"] = self.pending_private_key.get_secret_value()
        return data

    @classmethod
    def from_document(cls, document: Dict[str, Any], token: Optional[str] = None) -> "SigningSecret":
        secret = cls.model_validate(document)
        return secret.model_copy(update={"concurrency_token": token})

    @classmethod
    def for_keypair(cls, keypair: KeyPair) -> "SigningSecret":
        return cls(active_kid=keypair.kid, private_key=keypair.export_secret())

    # ------------------------------------------------------------------
    # Key access
    def active_keypair(self) -> KeyPair:
        return KeyPair.from_secret(self.active_kid, self.private_key)

    def pending_keypair(self) -> Optional[KeyPair]:
        if self.pending_kid is None or self.pending_private_key is None:
            return None
        return KeyPair.from_secret(self.pending_kid, self.pending_private_key)

    @property
    def kids(self) -> List[str]:
        return [kid for kid in (self.active_kid, self.pending_kid) if kid]

    # ------------------------------------------------------------------
    # Transitions (each returns a new secret; the original is left untouched)
    def with_marker(self, marker: Optional[RotationMarker]) -> "SigningSecret":
        return self.model_copy(update={"rotation": marker})

    def with_pending(self, keypair: KeyPair) -> "SigningSecret":
        return self.model_copy(
            update={"pending_kid": keypair.kid, "pending_private_key": keypair.export_secret()}
        )

    def without_pending(self) -> "SigningSecret":
        return self.model_copy(update={"pending_kid": None, "pending_private_key": None})

    def promoted(self) -> "SigningSecret":
        """Make the pending key the active key and clear the pending slot."""
        if self.pending_kid is None or self.pending_private_key is None:
            raise ValueError("No pending key to promote")
        return self.model_copy(
            update={
                "active_kid": self.pending_kid,
                "private_key": self.pending_private_key,
                "pending_kid": None,
                "pending_private_key": None,
            }
        )

    def replaced(self, keypair: KeyPair, revocation: Revocation) -> "SigningSecret":
        """Wholesale replacement used by emergency revocation."""
        return SigningSecret(
            schema_version=self.schema_version,
            active_kid=keypair.kid,
            private_key=keypair.export_secret(),
            revocation=revocation,
            concurrency_token=self.concurrency_token,
        )


class PublicKeyRecord(BaseModel):
    """Persisted public half of a signing key."""

    kid: str
    kty: str = "EC"
    crv: str = CURVE_NAME
    x: str
    y: str
    issuer: str
    created_at: datetime
    expires_at: Optional[datetime] = None

    @classmethod
    def from_keypair(
        cls,
        keypair: KeyPair,
        issuer: str,
        created_at: datetime,
        ttl: Optional[timedelta] = None,
    ) -> "PublicKeyRecord":
        return cls(
            kid=keypair.kid,
            x=keypair.x,
            y=keypair.y,
            issuer=issuer,
            created_at=created_at,
            expires_at=created_at + ttl if ttl else None,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def same_material(self, other: "PublicKeyRecord") -> bool:
        return (self.kty, self.crv, self.x, self.y, self.issuer) == (
            other.kty,
            other.crv,
            other.x,
            other.y,
            other.issuer,
        )

    def to_jwk(self) -> Dict[str, str]:
        return {
            "kty": self.kty,
            "crv": self.crv,
            "kid": self.kid,
            "x": self.x,
            "y": self.y,
            "alg": ALGORITHM,
        }


class JWKSDocument(BaseModel):
    """Read-only view of the public keys an issuer currently serves."""

    keys: List[PublicKeyRecord] = Field(default_factory=list)

    @property
    def kids(self) -> List[str]:
        return [record.kid for record in self.keys]

    def contains(self, *kids: str) -> bool:
        present = set(self.kids)
        return all(kid in present for kid in kids)

    def to_jwks(self) -> Dict[str, List[Dict[str, str]]]:
        return {"keys": [record.to_jwk() for record in self.keys]}


class RemovalProof(BaseModel):
    """Evidence a caller presents before a public record may be removed.

    ``superseded_at`` is when the kid stopped signing; ``None`` means it never
    signed anything (a pending key dropped by rollback). A
    ``revocation_reason`` waives the overlap window.
    """

    kid: str
    active_kid: str
    pending_kid: Optional[str] = None
    checked_at: datetime
    superseded_at: Optional[datetime] = None
    overlap_seconds: float = 0
    revocation_reason: Optional[str] = None

    @classmethod
    def from_secret(
        cls,
        kid: str,
        secret: SigningSecret,
        checked_at: datetime,
        superseded_at: Optional[datetime] = None,
        overlap_seconds: float = 0,
        revocation_reason: Optional[str] = None,
    ) -> "RemovalProof":
        return cls(
            kid=kid,
            active_kid=secret.active_kid,
            pending_kid=secret.pending_kid,
            checked_at=checked_at,
            superseded_at=superseded_at,
            overlap_seconds=overlap_seconds,
            revocation_reason=revocation_reason,
        )
