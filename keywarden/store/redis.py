"""Redis-backed key store and public-key registry for multi-process deployments."""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Optional

try:
    import redis.asyncio as redis
    from redis.exceptions import WatchError
except ImportError:
    redis = None

from ..errors import ConflictError, RegistryConflictError, SecretNotFoundError
from ..models import PublicKeyRecord, RemovalProof, SigningSecret
from .base import KeyStore, PublicKeyRegistry, check_removal

PREFIX = "keywarden"


class _RedisBase:
    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for the Redis store backend")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = client

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis


class RedisKeyStore(_RedisBase, KeyStore):
    """Signing secrets in Redis hashes, replaced under WATCH/MULTI."""

    @staticmethod
    def _key(service_id: str) -> str:
        return f"{PREFIX}:secret:{service_id}"

    async def get_secret(self, service_id: str) -> SigningSecret:
        client = await self._client()
        entry = await client.hgetall(self._key(service_id))
        if not entry:
            raise SecretNotFoundError(service_id)
        return SigningSecret.from_document(json.loads(entry["document"]), entry["token"])

    async def put_secret(
        self,
        service_id: str,
        secret: SigningSecret,
        expected_token: Optional[str],
    ) -> SigningSecret:
        client = await self._client()
        key = self._key(service_id)
        token = uuid.uuid4().hex
        async with client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = await pipe.hget(key, "token")
                if current != expected_token:
                    raise ConflictError(
                        f"Stale concurrency token for {service_id}",
                        context={"expected": expected_token, "actual": current},
                    )
                pipe.multi()
                pipe.hset(key, mapping={"document": json.dumps(secret.to_document()), "token": token})
                await pipe.execute()
            except WatchError as exc:
                raise ConflictError(f"Concurrent write to {service_id}") from exc
        return secret.model_copy(update={"concurrency_token": token})


class RedisPublicKeyRegistry(_RedisBase, PublicKeyRegistry):
    """Public-key records as JSON strings plus a per-issuer kid index."""

    @staticmethod
    def _key(kid: str) -> str:
        return f"{PREFIX}:jwk:{kid}"

    @staticmethod
    def _issuer_key(issuer: str) -> str:
        return f"{PREFIX}:issuer:{issuer}"

    async def register_public_key(self, record: PublicKeyRecord) -> PublicKeyRecord:
        client = await self._client()
        created = await client.set(self._key(record.kid), record.model_dump_json(), nx=True)
        if not created:
            existing = await self.get_public_key(record.kid)
            if existing is not None and not existing.same_material(record):
                raise RegistryConflictError(f"{record.kid} already registered with different material")
            return existing or record
        await client.sadd(self._issuer_key(record.issuer), record.kid)
        return record

    async def get_public_key(self, kid: str) -> Optional[PublicKeyRecord]:
        client = await self._client()
        raw = await client.get(self._key(kid))
        return PublicKeyRecord.model_validate_json(raw) if raw else None

    async def list_public_keys(self, issuer: str) -> list[PublicKeyRecord]:
        client = await self._client()
        records = []
        for kid in sorted(await client.smembers(self._issuer_key(issuer))):
            record = await self.get_public_key(kid)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.created_at)

    async def remove_public_key(self, kid: str, proof: RemovalProof) -> bool:
        check_removal(kid, proof)
        return await self._delete(kid)

    async def purge_expired(self, issuer: str, now: datetime, keep: set[str]) -> list[str]:
        purged = []
        for record in await self.list_public_keys(issuer):
            if record.kid not in keep and record.is_expired(now):
                await self._delete(record.kid)
                purged.append(record.kid)
        return purged

    async def _delete(self, kid: str) -> bool:
        client = await self._client()
        record = await self.get_public_key(kid)
        if record is None:
            return False
        async with client.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(kid))
            pipe.srem(self._issuer_key(record.issuer), kid)
            await pipe.execute()
        return True
