"""Collaborator interfaces the orchestrators call out to.

The cache-flush mechanism, the consuming services' verifiers, operator
confirmation, alerting and telemetry all live outside keywarden. This module
defines the seams plus in-process and HTTP implementations of them.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, Mapping, Optional, Protocol

import httpx
import jwt
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .config import ConsumerConfig
    from .monitor import VerificationEvent
    from .tokens import CachingJWKSVerifier

logger = logging.getLogger(__name__)


class Alert(BaseModel):
    """Operator alert raised on a threshold breach or escalation."""

    service_id: str
    severity: str = "warning"
    message: str
    error_rate: Optional[float] = None
    threshold: Optional[float] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    raised_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AlertSink(Protocol):
    async def alert(self, alert: Alert) -> None:
        """Deliver ``alert`` to operators."""


class LoggingAlertSink:
    """Alert sink that writes alerts to the log."""

    async def alert(self, alert: Alert) -> None:
        level = logging.ERROR if alert.severity == "critical" else logging.WARNING
        logger.log(level, f"ALERT [{alert.service_id}] {alert.message} context={alert.context}")


class ConsumerStatus(str, Enum):
    LAUNCHING = "launching"
    STABLE = "stable"
    FAILED = "failed"
    UNKNOWN = "unknown"


class CacheFlushHook(Protocol):
    """Forces a consuming service to drop its cached JWKS."""

    async def flush(self, consumer: str) -> None:
        """Trigger the flush (for example by restarting the consumer)."""

    async def status(self, consumer: str) -> ConsumerStatus:
        """Report how far the consumer has come back after a flush."""


class VerifierProbe(Protocol):
    """Asks a consuming service whether it accepts a token."""

    async def accepts(self, consumer: str, token: str) -> bool:
        """Return ``True`` if ``consumer`` accepts ``token``."""


class ConfirmationSource(Protocol):
    """Delivers an operator's go/no-go before a rotation switches keys."""

    async def wait_for_confirmation(self, service_id: str, old_kid: str, new_kid: str) -> bool:
        """Return ``True`` to proceed, ``False`` to roll back."""


class TelemetrySource(Protocol):
    """Downstream verification outcomes collected by a telemetry backend."""

    async def fetch(self, service_id: str, since: datetime) -> Iterable["VerificationEvent"]:
        """Return verification events for ``service_id`` newer than ``since``."""


# ----------------------------------------------------------------------
# In-process implementations
class LocalCacheFlushHook:
    """Flushes in-process :class:`CachingJWKSVerifier` instances."""

    def __init__(self, verifiers: Mapping[str, "CachingJWKSVerifier"]) -> None:
        self.verifiers = verifiers
        self.flushed: list[str] = []

    async def flush(self, consumer: str) -> None:
        self.verifiers[consumer].invalidate()
        self.flushed.append(consumer)

    async def status(self, consumer: str) -> ConsumerStatus:
        return ConsumerStatus.STABLE if consumer in self.verifiers else ConsumerStatus.UNKNOWN


class LocalVerifierProbe:
    """Probes in-process :class:`CachingJWKSVerifier` instances."""

    def __init__(self, verifiers: Mapping[str, "CachingJWKSVerifier"]) -> None:
        self.verifiers = verifiers

    async def accepts(self, consumer: str, token: str) -> bool:
        try:
            await self.verifiers[consumer].verify(token)
        except jwt.exceptions.InvalidTokenError as exc:
            logger.info(f"Consumer {consumer} rejected probe token: {exc}")
            return False
        return True


class EventConfirmationSource:
    """Confirmation delivered programmatically via :meth:`confirm` / :meth:`deny`."""

    def __init__(self) -> None:
        self._decisions: Dict[str, asyncio.Future[bool]] = {}

    def _future(self, service_id: str) -> "asyncio.Future[bool]":
        if service_id not in self._decisions:
            self._decisions[service_id] = asyncio.get_running_loop().create_future()
        return self._decisions[service_id]

    def confirm(self, service_id: str) -> None:
        self._future(service_id).set_result(True)

    def deny(self, service_id: str) -> None:
        self._future(service_id).set_result(False)

    async def wait_for_confirmation(self, service_id: str, old_kid: str, new_kid: str) -> bool:
        logger.info(f"Awaiting operator confirmation to switch {service_id}: {old_kid} -> {new_kid}")
        try:
            return await self._future(service_id)
        finally:
            self._decisions.pop(service_id, None)


# ----------------------------------------------------------------------
# HTTP implementations
class HttpCacheFlushHook:
    """Calls each consumer's flush endpoint.

    ``POST flush_url`` triggers the flush; ``GET flush_url`` returns
    ``{"status": "launching" | "stable" | "failed"}``.
    """

    def __init__(
        self,
        consumers: Mapping[str, "ConsumerConfig"],
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10,
    ) -> None:
        self.consumers = consumers
        self._client = client
        self.timeout = timeout

    def _url(self, consumer: str) -> str:
        url = self.consumers[consumer].flush_url
        if not url:
            raise ValueError(f"No flush_url configured for consumer {consumer}")
        return url

    async def _request(self, method: str, url: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.request(method, url, timeout=self.timeout)

    async def flush(self, consumer: str) -> None:
        response = await self._request("POST", self._url(consumer))
        response.raise_for_status()

    async def status(self, consumer: str) -> ConsumerStatus:
        response = await self._request("GET", self._url(consumer))
        response.raise_for_status()
        try:
            return ConsumerStatus(response.json().get("status", "unknown"))
        except ValueError:
            return ConsumerStatus.UNKNOWN


class HttpVerifierProbe:
    """Posts a token to each consumer's verify endpoint.

    A 2xx response means accepted, 401/403 means rejected; anything else is
    an error.
    """

    def __init__(
        self,
        consumers: Mapping[str, "ConsumerConfig"],
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10,
    ) -> None:
        self.consumers = consumers
        self._client = client
        self.timeout = timeout

    async def _post(self, url: str, token: str) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"}
        if self._client is not None:
            return await self._client.post(url, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.post(url, headers=headers, timeout=self.timeout)

    async def accepts(self, consumer: str, token: str) -> bool:
        url = self.consumers[consumer].verify_url
        if not url:
            raise ValueError(f"No verify_url configured for consumer {consumer}")
        response = await self._post(url, token)
        if response.status_code in (401, 403):
            return False
        response.raise_for_status()
        return True
