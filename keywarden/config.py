from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Connection settings for the Redis store backend."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class StoreConfig(BaseModel):
    """Secret store and public-key registry backend settings."""

    backend: Optional[Literal["inmemory", "sqlite", "redis"]] = None
    redis: RedisConfig = RedisConfig()


class RotationConfig(BaseModel):
    """Timing and threshold parameters for standard rotation."""

    propagation_window_seconds: float = 300
    propagation_polls: int = 5
    poll_interval_seconds: float = 2
    monitoring_window_seconds: float = 900
    monitoring_interval_seconds: float = 60
    error_rate_threshold: float = 0.05
    marker_grace_seconds: float = 3600
    conflict_attempts: int = 3
    require_confirmation: bool = False
    confirmation_timeout_seconds: float = 900


class RevocationConfig(BaseModel):
    """Time budget and wait policy for emergency revocation."""

    sla_seconds: float = 300
    step_timeout_seconds: float = 60
    record_removal_target_seconds: float = 30
    strict_wait: bool = False
    consumer_poll_interval_seconds: float = 2


class JwksConfig(BaseModel):
    """Publication parameters for the JWKS document."""

    cache_ttl_seconds: float = 300
    key_ttl_days: float = 90


class ConsumerConfig(BaseModel):
    """A downstream service that verifies tokens against our JWKS."""

    name: str
    flush_url: Optional[str] = None
    verify_url: Optional[str] = None


class ServiceConfig(BaseModel):
    """Per-service issuer and consumer wiring."""

    issuer: Optional[str] = None
    consumers: List[ConsumerConfig] = Field(default_factory=list)


class KeywardenConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    call_timeout_seconds: float = 10
    store: StoreConfig = StoreConfig()
    rotation: RotationConfig = RotationConfig()
    revocation: RevocationConfig = RevocationConfig()
    jwks: JwksConfig = JwksConfig()
    services: Dict[str, ServiceConfig] = Field(default_factory=dict)

    def issuer_for(self, service_id: str) -> str:
        """Return the issuer configured for ``service_id`` (defaults to the id)."""
        service = self.services.get(service_id)
        if service and service.issuer:
            return service.issuer
        return service_id

    def service_for(self, issuer: str) -> str:
        """Return the service that signs for ``issuer``."""
        for service_id, service in self.services.items():
            if service.issuer == issuer:
                return service_id
        return issuer

    def consumers_for(self, service_id: str) -> List[ConsumerConfig]:
        service = self.services.get(service_id)
        return list(service.consumers) if service else []


def load_config(path: Optional[str] = None) -> KeywardenConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to KEYWARDEN_CONFIG env
            variable or 'keywarden.yaml' in the current directory.
    """

    config_path = path or os.getenv("KEYWARDEN_CONFIG", "keywarden.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = KeywardenConfig(**data)
    else:
        config = KeywardenConfig()

    env_db_url = os.getenv("KEYWARDEN_DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
