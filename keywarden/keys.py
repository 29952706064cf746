"""ES256 keypair generation, validation and scoped private key handling."""

from __future__ import annotations

import base64
import logging
import secrets
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import ec
from pydantic import SecretStr

from .errors import GenerationError, KeyLifecycleError

logger = logging.getLogger(__name__)

CURVE_NAME = "P-256"
ALGORITHM = "ES256"

# NIST P-256 domain parameters (y^2 = x^3 + ax + b over GF(p)).
_P256_P = 0xFFFFFFFF00000001000000000000000000000000FFFFFFFFFFFFFFFFFFFFFFFF
_P256_A = _P256_P - 3
_P256_B = 0x5AC635D8AA3A93E7B3EBBD55769886BC651D06B0CC53B0F63BCE3C3E27D2604B
_COORD_BYTES = 32


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _coordinate(value: int) -> str:
    return b64url_encode(value.to_bytes(_COORD_BYTES, "big"))


def is_on_curve(x: int, y: int) -> bool:
    """Return ``True`` when ``(x, y)`` is a point on P-256."""
    if not (0 <= x < _P256_P and 0 <= y < _P256_P):
        return False
    return (y * y - (x * x * x + _P256_A * x + _P256_B)) % _P256_P == 0


class KeyPair:
    """An ES256 keypair owned by one service.

    The private scalar lives in a mutable buffer that :meth:`destroy` zeroes.
    Use the keypair as a context manager to guarantee the buffer is wiped on
    every exit path, and :meth:`signing_key` to obtain a short-lived
    ``cryptography`` key object for a single signing operation.
    """

    curve = CURVE_NAME

    def __init__(self, kid: str, private_scalar: bytearray, x: str, y: str) -> None:
        self.kid = kid
        self.x = x
        self.y = y
        self._scalar = private_scalar
        self._destroyed = False

    def __repr__(self) -> str:
        state = "destroyed" if self._destroyed else "live"
        return f"KeyPair(kid={self.kid!r}, curve={self.curve!r}, {state})"

    def __enter__(self) -> "KeyPair":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.destroy()

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @classmethod
    def from_private_key(cls, kid: str, private_key: ec.EllipticCurvePrivateKey) -> "KeyPair":
        numbers = private_key.private_numbers()
        scalar = bytearray(numbers.private_value.to_bytes(_COORD_BYTES, "big"))
        public = numbers.public_numbers
        return cls(kid, scalar, _coordinate(public.x), _coordinate(public.y))

    @classmethod
    def from_secret(cls, kid: str, secret: SecretStr) -> "KeyPair":
        """Rebuild a keypair from the base64url private scalar kept in a secret."""
        scalar = bytearray(b64url_decode(secret.get_secret_value()))
        try:
            private_key = ec.derive_private_key(int.from_bytes(scalar, "big"), ec.SECP256R1())
        except ValueError as exc:
            _wipe(scalar)
            raise KeyLifecycleError(f"Stored private key for {kid} is invalid") from exc
        public = private_key.public_key().public_numbers()
        return cls(kid, scalar, _coordinate(public.x), _coordinate(public.y))

    def export_secret(self) -> SecretStr:
        """Return the private scalar in the signing-secret wire form."""
        self._ensure_live()
        return SecretStr(b64url_encode(bytes(self._scalar)))

    @contextmanager
    def signing_key(self) -> Iterator[ec.EllipticCurvePrivateKey]:
        """Yield a ``cryptography`` private key for the duration of the block."""
        self._ensure_live()
        key = ec.derive_private_key(int.from_bytes(self._scalar, "big"), ec.SECP256R1())
        try:
            yield key
        finally:
            del key

    def public_jwk(self) -> Dict[str, str]:
        return {
            "kty": "EC",
            "crv": CURVE_NAME,
            "kid": self.kid,
            "x": self.x,
            "y": self.y,
            "alg": ALGORITHM,
        }

    def destroy(self) -> None:
        """Zero the private scalar. Safe to call more than once."""
        _wipe(self._scalar)
        self._destroyed = True

    def _ensure_live(self) -> None:
        if self._destroyed:
            raise KeyLifecycleError(f"Private key material for {self.kid} has been destroyed")


def _wipe(buffer: bytearray) -> None:
    for index in range(len(buffer)):
        buffer[index] = 0


class KeyGenerator:
    """Produces and validates ES256 keypairs with service-unique kids."""

    def __init__(self, suffix_bytes: int = 3, max_kid_attempts: int = 8) -> None:
        self.suffix_bytes = suffix_bytes
        self.max_kid_attempts = max_kid_attempts

    def new_kid(self, service_id: str, now: Optional[datetime] = None) -> str:
        """Derive a kid from the service id, a timestamp and a random suffix."""
        now = now or datetime.now(timezone.utc)
        return f"{service_id}-{now:%Y%m%d%H%M%S}-{secrets.token_hex(self.suffix_bytes)}"

    def generate(
        self,
        service_id: str,
        now: Optional[datetime] = None,
        taken: Iterable[str] = (),
    ) -> KeyPair:
        """Generate a validated keypair whose kid is not in ``taken``."""
        taken = set(taken)
        for _ in range(self.max_kid_attempts):
            kid = self.new_kid(service_id, now)
            if kid not in taken:
                break
        else:
            raise GenerationError(f"Could not derive a unique kid for {service_id}")

        try:
            private_key = ec.generate_private_key(ec.SECP256R1())
        except (UnsupportedAlgorithm, ValueError, OSError) as exc:
            raise GenerationError(f"Key generation failed for {service_id}: {exc}") from exc

        keypair = KeyPair.from_private_key(kid, private_key)
        self.validate(keypair)
        logger.info(f"Generated ES256 keypair kid={kid} for service={service_id}")
        return keypair

    def validate(self, keypair: KeyPair) -> None:
        """Raise :class:`GenerationError` unless the public point is on P-256."""
        x, y = (int.from_bytes(b64url_decode(c), "big") for c in self.export_public(keypair))
        if not is_on_curve(x, y):
            keypair.destroy()
            raise GenerationError(f"Public point for {keypair.kid} is not on {CURVE_NAME}")
        try:
            ec.EllipticCurvePublicNumbers(x, y, ec.SECP256R1()).public_key()
        except ValueError as exc:
            keypair.destroy()
            raise GenerationError(f"Public point for {keypair.kid} rejected: {exc}") from exc

    @staticmethod
    def export_public(keypair: KeyPair) -> Tuple[str, str]:
        """Return the base64url ``(x, y)`` coordinates of ``keypair``."""
        return keypair.x, keypair.y
