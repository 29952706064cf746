"""Step traces and run reports emitted by every lifecycle operation."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .clock import Clock, elapsed_ms

logger = logging.getLogger(__name__)


class Verdict(str, Enum):
    PASS = "PASS"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"
    DEGRADED_SAFE = "DEGRADED_SAFE"


class StepTrace(BaseModel):
    """One audited step of a run."""

    name: str
    state: str
    status: Literal["ok", "failed", "skipped"]
    started_at: datetime
    elapsed_ms: int
    detail: Optional[str] = None


class RunReport(BaseModel):
    """Outcome of a bootstrap, rotation or revocation run."""

    operation: Literal["bootstrap", "rotate", "revoke"]
    service_id: str
    run_id: Optional[str] = None
    old_kid: Optional[str] = None
    new_kid: Optional[str] = None
    elapsed_ms: int = 0
    final_state: str
    verdict: Verdict
    dry_run: bool = False
    steps: List[StepTrace] = Field(default_factory=list)
    error: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        """Operator-facing result in the external wire shape."""
        return {
            "oldKid": self.old_kid,
            "newKid": self.new_kid,
            "elapsedMs": self.elapsed_ms,
            "finalState": self.final_state,
            "verdict": self.verdict.value,
        }

    def step(self, name: str) -> Optional[StepTrace]:
        for trace in self.steps:
            if trace.name == name:
                return trace
        return None


@dataclass
class StepHandle:
    """Mutable handle a step body can annotate before it finishes."""

    detail: Optional[str] = None


class StepTracer:
    """Records elapsed time and outcome of each step of a run."""

    def __init__(self, clock: Clock, operation: str, service_id: str) -> None:
        self.clock = clock
        self.operation = operation
        self.service_id = service_id
        self.steps: List[StepTrace] = []
        self.last_successful_step: Optional[str] = None
        self._started = clock.monotonic()

    @property
    def elapsed_ms(self) -> int:
        return elapsed_ms(self.clock, self._started)

    @asynccontextmanager
    async def step(self, name: str, state: str) -> AsyncIterator[StepHandle]:
        handle = StepHandle()
        started_at = self.clock.now()
        started = self.clock.monotonic()
        logger.info(f"[{self.operation} {self.service_id}] {name} started (state={state})")
        try:
            yield handle
        except BaseException as exc:
            took = elapsed_ms(self.clock, started)
            detail = handle.detail or str(exc) or type(exc).__name__
            self.steps.append(
                StepTrace(
                    name=name,
                    state=state,
                    status="failed",
                    started_at=started_at,
                    elapsed_ms=took,
                    detail=detail,
                )
            )
            logger.error(f"[{self.operation} {self.service_id}] {name} failed after {took}ms: {detail}")
            raise
        took = elapsed_ms(self.clock, started)
        self.steps.append(
            StepTrace(
                name=name,
                state=state,
                status="ok",
                started_at=started_at,
                elapsed_ms=took,
                detail=handle.detail,
            )
        )
        self.last_successful_step = name
        logger.info(f"[{self.operation} {self.service_id}] {name} finished in {took}ms")

    def skip(self, name: str, state: str, detail: str) -> None:
        self.steps.append(
            StepTrace(
                name=name,
                state=state,
                status="skipped",
                started_at=self.clock.now(),
                elapsed_ms=0,
                detail=detail,
            )
        )
        logger.info(f"[{self.operation} {self.service_id}] {name} skipped: {detail}")

    def context(self, state: str) -> Dict[str, Any]:
        return {
            "state": state,
            "elapsed_ms": self.elapsed_ms,
            "last_successful_step": self.last_successful_step,
        }

    def report(
        self,
        final_state: str,
        verdict: Verdict,
        old_kid: Optional[str] = None,
        new_kid: Optional[str] = None,
        run_id: Optional[str] = None,
        dry_run: bool = False,
        error: Optional[BaseException] = None,
    ) -> RunReport:
        report = RunReport(
            operation=self.operation,
            service_id=self.service_id,
            run_id=run_id,
            old_kid=old_kid,
            new_kid=new_kid,
            elapsed_ms=self.elapsed_ms,
            final_state=final_state,
            verdict=verdict,
            dry_run=dry_run,
            steps=list(self.steps),
            error=str(error) if error else None,
            context=self.context(final_state),
        )
        logger.info(
            f"[{self.operation} {self.service_id}] verdict={verdict.value} "
            f"final_state={final_state} elapsed={report.elapsed_ms}ms"
        )
        return report
