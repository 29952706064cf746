"""Operator command line interface for key lifecycle operations."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Optional

import typer

from keywarden.errors import AlreadyInProgressError, KeyLifecycleError, SecretNotFoundError
from keywarden.manager import KeyLifecycleManager
from keywarden.trace import RunReport, Verdict

app = typer.Typer(help="Rotate and revoke ES256 signing keys")

EXIT_CODES = {
    Verdict.PASS: 0,
    Verdict.FAILED: 1,
    Verdict.ROLLED_BACK: 2,
    Verdict.DEGRADED_SAFE: 3,
}
EXIT_REJECTED = 4


@app.callback()
def main(
    config: Optional[Path] = typer.Option(None, help="Path to keywarden.yaml"),
    log_level: str = typer.Option("WARNING", help="Logging level"),
) -> None:
    """Keywarden CLI entry point."""
    if config is not None:
        os.environ["KEYWARDEN_CONFIG"] = str(config)
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _manager() -> KeyLifecycleManager:
    return KeyLifecycleManager.from_config()


def _emit(report: RunReport, verbose: bool) -> None:
    payload = report.model_dump(mode="json") if verbose else report.summary()
    typer.echo(json.dumps(payload, indent=2 if verbose else None))
    code = EXIT_CODES[report.verdict]
    if code:
        raise typer.Exit(code=code)


def _rejected(exc: KeyLifecycleError) -> None:
    typer.secho(f"{type(exc).__name__}: {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=EXIT_REJECTED)


@app.command("bootstrap")
def bootstrap(
    service_id: str,
    dry_run: bool = typer.Option(False, help="Report what would happen without mutating anything"),
    verbose: bool = typer.Option(False, help="Print the full step trace"),
) -> None:
    """
    Create the first signing key for a service.

    Does nothing if the service already has a signing secret.

    Example:
        keywarden bootstrap billing
    """
    report = asyncio.run(_manager().bootstrap(service_id, dry_run=dry_run))
    _emit(report, verbose)


@app.command("rotate")
def rotate(
    service_id: str,
    dry_run: bool = typer.Option(False, help="Report what would happen without mutating anything"),
    verbose: bool = typer.Option(False, help="Print the full step trace"),
) -> None:
    """
    Rotate a service's signing key with a dual-key overlap.

    Prints {oldKid, newKid, elapsedMs, finalState, verdict}. Exit codes:
    0 PASS, 1 FAILED, 2 ROLLED_BACK, 4 rejected (already in progress or
    unknown service).

    Example:
        keywarden rotate billing --dry-run
    """
    try:
        report = asyncio.run(_manager().rotate(service_id, dry_run=dry_run))
    except (AlreadyInProgressError, SecretNotFoundError) as exc:
        _rejected(exc)
    _emit(report, verbose)


@app.command("revoke")
def revoke(
    service_id: str,
    reason: str = typer.Option(..., help="Why the key is being revoked"),
    kid: Optional[str] = typer.Option(None, help="Refuse unless this is the active kid"),
    dry_run: bool = typer.Option(False, help="Report what would happen without mutating anything"),
    verbose: bool = typer.Option(False, help="Print the full step trace"),
) -> None:
    """
    Immediately replace a suspected-compromised signing key.

    Exit codes: 0 PASS, 1 FAILED (nothing changed), 3 DEGRADED_SAFE (key
    revoked but cleanup incomplete), 4 rejected.

    Example:
        keywarden revoke billing --reason "key leaked in CI logs"
    """
    try:
        report = asyncio.run(_manager().revoke(service_id, reason, kid=kid, dry_run=dry_run))
    except KeyLifecycleError as exc:
        _rejected(exc)
    _emit(report, verbose)


@app.command("jwks")
def jwks(
    service_id: str,
    headers: bool = typer.Option(False, help="Also print the HTTP headers"),
) -> None:
    """Print the JWKS document currently served for a service's issuer."""
    rendered = asyncio.run(_manager().render_jwks(service_id))
    if headers:
        for name, value in rendered.headers.items():
            typer.echo(f"{name}: {value}")
        typer.echo("")
    typer.echo(rendered.body)


@app.command("status")
def status(service_id: str) -> None:
    """Show the active and pending kids of a service and any revocation or rotation marker."""
    try:
        secret = asyncio.run(_manager().status(service_id))
    except SecretNotFoundError as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1)
    typer.echo(f"Service {service_id}: active {secret.active_kid}")
    if secret.pending_kid:
        typer.echo(f"Pending: {secret.pending_kid}")
    if secret.rotation:
        typer.echo(
            f"Rotation {secret.rotation.run_id} in progress since {secret.rotation.started_at.isoformat()}"
        )
    if secret.revocation:
        typer.echo(
            f"Last revocation: {secret.revocation.revoked_kid} at "
            f"{secret.revocation.timestamp.isoformat()} ({secret.revocation.reason})"
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
