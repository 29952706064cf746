"""SQLite implementation of the key store and public-key registry."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..errors import ConflictError, RegistryConflictError, SecretNotFoundError
from ..models import PublicKeyRecord, RemovalProof, SigningSecret
from .base import KeyStore, PublicKeyRegistry, check_removal


class _SQLiteBase:
    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        # Overwritten and deleted pages are zeroed on disk.
        self._conn.execute("PRAGMA secure_delete = ON")
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        self._conn.close()


class SQLiteKeyStore(_SQLiteBase, KeyStore):
    """Persist signing secrets using SQLite with token-guarded updates."""

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS signing_secrets (
                service_id TEXT PRIMARY KEY,
                document TEXT NOT NULL,
                token TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    def _insert(self, service_id: str, document: str, token: str) -> None:
        try:
            self._execute(
                "INSERT INTO signing_secrets (service_id, document, token, updated_at) VALUES (?, ?, ?, ?)",
                service_id,
                document,
                token,
                datetime.now(timezone.utc).isoformat(),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Signing secret for {service_id} already exists") from exc

    async def get_secret(self, service_id: str) -> SigningSecret:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT document, token FROM signing_secrets WHERE service_id = ?",
            service_id,
        )
        if row is None:
            raise SecretNotFoundError(service_id)
        return SigningSecret.from_document(json.loads(row["document"]), row["token"])

    async def put_secret(
        self,
        service_id: str,
        secret: SigningSecret,
        expected_token: Optional[str],
    ) -> SigningSecret:
        token = uuid.uuid4().hex
        document = json.dumps(secret.to_document())
        if expected_token is None:
            await asyncio.to_thread(self._insert, service_id, document, token)
        else:
            updated = await asyncio.to_thread(
                self._execute,
                """
                UPDATE signing_secrets
                SET document = ?, token = ?, updated_at = ?
                WHERE service_id = ? AND token = ?
                """,
                document,
                token,
                datetime.now(timezone.utc).isoformat(),
                service_id,
                expected_token,
            )
            if updated != 1:
                raise ConflictError(
                    f"Stale concurrency token for {service_id}",
                    context={"expected": expected_token},
                )
        return secret.model_copy(update={"concurrency_token": token})


class SQLitePublicKeyRegistry(_SQLiteBase, PublicKeyRegistry):
    """Persist public-key records using SQLite."""

    _COLUMNS = "kid, kty, crv, x, y, issuer, created_at, expires_at"

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS public_keys (
                kid TEXT PRIMARY KEY,
                kty TEXT NOT NULL DEFAULT 'EC',
                crv TEXT NOT NULL DEFAULT 'P-256',
                x TEXT NOT NULL,
                y TEXT NOT NULL,
                issuer TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_public_keys_issuer ON public_keys (issuer)")
        self._conn.commit()

    @staticmethod
    def _to_record(row: sqlite3.Row) -> PublicKeyRecord:
        return PublicKeyRecord(
            kid=row["kid"],
            kty=row["kty"],
            crv=row["crv"],
            x=row["x"],
            y=row["y"],
            issuer=row["issuer"],
            created_at=datetime.fromisoformat(row["created_at"]),
            expires_at=datetime.fromisoformat(row["expires_at"]) if row["expires_at"] else None,
        )

    async def register_public_key(self, record: PublicKeyRecord) -> PublicKeyRecord:
        existing = await self.get_public_key(record.kid)
        if existing is not None:
            if not existing.same_material(record):
                raise RegistryConflictError(f"{record.kid} already registered with different material")
            return existing
        await asyncio.to_thread(
            self._execute,
            f"INSERT OR IGNORE INTO public_keys ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            record.kid,
            record.kty,
            record.crv,
            record.x,
            record.y,
            record.issuer,
            record.created_at.isoformat(),
            record.expires_at.isoformat() if record.expires_at else None,
        )
        return record

    async def get_public_key(self, kid: str) -> Optional[PublicKeyRecord]:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT {self._COLUMNS} FROM public_keys WHERE kid = ?", kid
        )
        return self._to_record(row) if row else None

    async def list_public_keys(self, issuer: str) -> list[PublicKeyRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {self._COLUMNS} FROM public_keys WHERE issuer = ? ORDER BY created_at",
            issuer,
        )
        return [self._to_record(r) for r in rows]

    async def remove_public_key(self, kid: str, proof: RemovalProof) -> bool:
        check_removal(kid, proof)
        removed = await asyncio.to_thread(self._execute, "DELETE FROM public_keys WHERE kid = ?", kid)
        return removed > 0

    async def purge_expired(self, issuer: str, now: datetime, keep: set[str]) -> list[str]:
        records = await self.list_public_keys(issuer)
        purged = [r.kid for r in records if r.kid not in keep and r.is_expired(now)]
        for kid in purged:
            await asyncio.to_thread(self._execute, "DELETE FROM public_keys WHERE kid = ?", kid)
        return purged
