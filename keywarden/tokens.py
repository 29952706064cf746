"""ES256 probe tokens and JWKS-based verification."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

import jwt

from .clock import Clock, SystemClock
from .keys import ALGORITHM, KeyPair

if TYPE_CHECKING:
    from .jwks import JWKSSource
    from .monitor import ConsistencyMonitor

logger = logging.getLogger(__name__)


class UnknownKeyIdError(jwt.exceptions.InvalidTokenError):
    """The token's kid is not present in the verifier's JWKS."""


def sign_token(
    keypair: KeyPair,
    issuer: str,
    now: datetime,
    claims: Optional[Mapping[str, Any]] = None,
    ttl_seconds: int = 120,
) -> str:
    """Sign a short-lived ES256 JWT with ``keypair``."""
    issued_at = int(now.timestamp())
    payload: Dict[str, Any] = {
        "iss": issuer,
        "iat": issued_at,
        "exp": issued_at + ttl_seconds,
        "jti": uuid.uuid4().hex,
    }
    payload.update(claims or {})
    with keypair.signing_key() as key:
        return jwt.encode(payload, key, algorithm=ALGORITHM, headers={"kid": keypair.kid})


def verify_token(
    token: str,
    jwks: Mapping[str, Any],
    issuer: Optional[str] = None,
    now: Optional[datetime] = None,
    leeway: int = 0,
) -> Dict[str, Any]:
    """Validate ``token`` against the keys in ``jwks`` and return its claims.

    When ``now`` is given, expiry is checked against it instead of the
    system clock.
    """
    header = jwt.get_unverified_header(token)
    for key in jwks.get("keys", []):
        if key.get("kid") != header.get("kid"):
            continue
        public_key = jwt.algorithms.ECAlgorithm.from_jwk(json.dumps(key))
        options = {"verify_exp": False, "verify_iat": False, "verify_nbf": False} if now else None
        claims = jwt.decode(
            token,
            public_key,
            algorithms=[ALGORITHM],
            issuer=issuer,
            leeway=leeway,
            options=options,
        )
        if now is not None and "exp" in claims:
            if claims["exp"] + leeway <= now.timestamp():
                raise jwt.exceptions.ExpiredSignatureError("Signature has expired")
        return claims
    raise UnknownKeyIdError(f"No matching JWK found for kid {header.get('kid')!r}")


class CachingJWKSVerifier:
    """A token consumer that caches the JWKS for a bounded TTL.

    This is how every downstream verifier behaves: a key added or removed
    upstream is only seen once the cached copy expires or is invalidated.
    Results are optionally reported to a :class:`ConsistencyMonitor`.
    """

    def __init__(
        self,
        name: str,
        source: "JWKSSource",
        issuer: str,
        clock: Optional[Clock] = None,
        cache_ttl_seconds: float = 300,
        monitor: Optional["ConsistencyMonitor"] = None,
        service_id: Optional[str] = None,
    ) -> None:
        self.name = name
        self.source = source
        self.issuer = issuer
        self.clock = clock or SystemClock()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.monitor = monitor
        self.service_id = service_id or issuer
        self._cached: Optional[Dict[str, Any]] = None
        self._fetched_at: Optional[datetime] = None

    def invalidate(self) -> None:
        """Drop the cached JWKS so the next verification refetches it."""
        self._cached = None
        self._fetched_at = None
        logger.info(f"Verifier {self.name} invalidated its JWKS cache")

    async def jwks(self) -> Dict[str, Any]:
        now = self.clock.now()
        stale = self._fetched_at is None or now - self._fetched_at >= timedelta(
            seconds=self.cache_ttl_seconds
        )
        if self._cached is None or stale:
            document = await self.source.serve(self.issuer)
            self._cached = document.to_jwks()
            self._fetched_at = now
        return self._cached

    async def verify(self, token: str) -> Dict[str, Any]:
        jwks = await self.jwks()
        now = self.clock.now()
        kid = jwt.get_unverified_header(token).get("kid", "")
        try:
            claims = verify_token(token, jwks, issuer=self.issuer, now=now)
        except jwt.exceptions.InvalidTokenError:
            if self.monitor is not None:
                self.monitor.record_failure(self.service_id, kid, now)
            raise
        if self.monitor is not None:
            self.monitor.record_success(self.service_id, kid, now)
        return claims
