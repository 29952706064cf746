"""Shared helpers for retries and timeouts."""

from .retry import compute_backoff, retry_on_conflict, schedule_retry
from .timeouts import with_timeout

__all__ = ["compute_backoff", "retry_on_conflict", "schedule_retry", "with_timeout"]
