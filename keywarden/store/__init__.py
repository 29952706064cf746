"""Storage layer for signing secrets and public-key records."""

from __future__ import annotations

import os
from typing import Optional

from ..config import KeywardenConfig, load_config
from .base import KeyStore, PublicKeyRegistry, check_removal
from .inmemory import InMemoryKeyStore, InMemoryPublicKeyRegistry
from .sqlite import SQLiteKeyStore, SQLitePublicKeyRegistry

_key_store_instance: KeyStore | None = None
_registry_instance: PublicKeyRegistry | None = None


def _resolve_backend(config: KeywardenConfig, database_url: Optional[str]) -> tuple[str, Optional[str]]:
    database_url = database_url or os.getenv("KEYWARDEN_DATABASE_URL") or config.database_url
    backend = config.store.backend
    if backend is None:
        if not database_url:
            backend = "inmemory"
        elif database_url.startswith("sqlite://"):
            backend = "sqlite"
        elif database_url.startswith("redis://"):
            backend = "redis"
        else:
            raise ValueError(f"Unsupported database backend: {database_url}")
    return backend, database_url


def _sqlite_path(database_url: Optional[str]) -> str:
    if not database_url or not database_url.startswith("sqlite://"):
        raise ValueError("sqlite backend requires a sqlite:// database_url")
    return database_url.replace("sqlite://", "", 1)


def get_key_store(
    database_url: Optional[str] = None, config: Optional[KeywardenConfig] = None
) -> KeyStore:
    """Factory function to obtain the configured signing-secret store.

    The backend is chosen from ``config.store.backend`` or inferred from
    ``database_url`` (argument, ``KEYWARDEN_DATABASE_URL`` or config). With
    nothing configured an in-memory store is returned and reused.
    """

    global _key_store_instance
    if _key_store_instance is not None and database_url is None and config is None:
        return _key_store_instance

    config = config or load_config()
    backend, database_url = _resolve_backend(config, database_url)

    if backend == "inmemory":
        _key_store_instance = InMemoryKeyStore()
    elif backend == "sqlite":
        _key_store_instance = SQLiteKeyStore(_sqlite_path(database_url))
    elif backend == "redis":
        from .redis import RedisKeyStore

        redis_conf = config.store.redis
        _key_store_instance = RedisKeyStore(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported store backend: {backend}")
    return _key_store_instance


def get_registry(
    database_url: Optional[str] = None, config: Optional[KeywardenConfig] = None
) -> PublicKeyRegistry:
    """Factory function to obtain the configured public-key registry."""

    global _registry_instance
    if _registry_instance is not None and database_url is None and config is None:
        return _registry_instance

    config = config or load_config()
    backend, database_url = _resolve_backend(config, database_url)

    if backend == "inmemory":
        _registry_instance = InMemoryPublicKeyRegistry()
    elif backend == "sqlite":
        _registry_instance = SQLitePublicKeyRegistry(_sqlite_path(database_url))
    elif backend == "redis":
        from .redis import RedisPublicKeyRegistry

        redis_conf = config.store.redis
        _registry_instance = RedisPublicKeyRegistry(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported store backend: {backend}")
    return _registry_instance


__all__ = [
    "KeyStore",
    "PublicKeyRegistry",
    "InMemoryKeyStore",
    "InMemoryPublicKeyRegistry",
    "SQLiteKeyStore",
    "SQLitePublicKeyRegistry",
    "check_removal",
    "get_key_store",
    "get_registry",
]
