"""JWKS publication derived from the public-key registry."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Callable, Dict, Optional, Protocol

from pydantic import BaseModel

from .clock import Clock, SystemClock
from .errors import SecretNotFoundError
from .models import JWKSDocument, PublicKeyRecord
from .store.base import KeyStore, PublicKeyRegistry

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/jwks.json"


class JWKSSource(Protocol):
    """Anything that can produce the current JWKS document for an issuer."""

    async def serve(self, issuer: str) -> JWKSDocument:
        """Return the servable document for ``issuer``."""


class RenderedJWKS(BaseModel):
    """HTTP-ready JWKS response."""

    body: str
    etag: str
    headers: Dict[str, str]


class JWKSPublisher:
    """Derives the servable public-key document for an issuer.

    Expired records are dropped and the signing service's active kid is
    always ordered first, followed by its pending kid and then any
    transitional records (newest first). Downstream consumers are assumed to
    cache the document for ``cache_ttl_seconds``.
    """

    def __init__(
        self,
        registry: PublicKeyRegistry,
        key_store: KeyStore,
        clock: Optional[Clock] = None,
        cache_ttl_seconds: float = 300,
        service_for: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.registry = registry
        self.key_store = key_store
        self.clock = clock or SystemClock()
        self.cache_ttl_seconds = cache_ttl_seconds
        self._service_for = service_for or (lambda issuer: issuer)

    async def serve(self, issuer: str) -> JWKSDocument:
        now = self.clock.now()
        records = [r for r in await self.registry.list_public_keys(issuer) if not r.is_expired(now)]

        active_kid: Optional[str] = None
        pending_kid: Optional[str] = None
        try:
            secret = await self.key_store.get_secret(self._service_for(issuer))
        except SecretNotFoundError:
            secret = None
        if secret is not None:
            active_kid, pending_kid = secret.active_kid, secret.pending_kid

        def rank(record: PublicKeyRecord) -> tuple[int, float]:
            if record.kid == active_kid:
                return (0, 0.0)
            if record.kid == pending_kid:
                return (1, 0.0)
            return (2, -record.created_at.timestamp())

        ordered = sorted(records, key=rank)
        if active_kid and (not ordered or ordered[0].kid != active_kid):
            logger.error(f"JWKS for issuer={issuer} is missing the active kid {active_kid}")
        return JWKSDocument(keys=ordered)

    async def render(self, issuer: str) -> RenderedJWKS:
        """Serialize the document with a weak ETag and cache headers."""
        document = await self.serve(issuer)
        body = json.dumps(document.to_jwks(), separators=(",", ":"))
        etag = f'W/"{hashlib.sha256(body.encode()).hexdigest()[:16]}"'
        headers = {
            "Content-Type": "application/json",
            "Cache-Control": f"public, max-age={int(self.cache_ttl_seconds)}",
            "ETag": etag,
        }
        return RenderedJWKS(body=body, etag=etag, headers=headers)


def matches_etag(if_none_match: Optional[str], etag: str) -> bool:
    """Return ``True`` when an ``If-None-Match`` header matches ``etag``."""
    if not if_none_match:
        return False
    candidates = [value.strip() for value in if_none_match.split(",")]
    bare = etag[2:] if etag.startswith("W/") else etag
    return "*" in candidates or etag in candidates or bare in candidates
