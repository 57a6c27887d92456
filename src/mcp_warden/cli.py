"""CLI for MCP Warden."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click

from mcp_warden.config import Settings, get_settings
from mcp_warden.logging import setup_logging
from mcp_warden.reputation import ReputationLedger
from mcp_warden.sandbox import (
    SandboxManager,
    SecurityReport,
    export_security_report,
    format_security_report,
    generate_security_report,
)
from mcp_warden.security import DetectorConfig, InjectionDetector, default_catalog
from mcp_warden.storage import SQLiteRecordStore


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """MCP Warden - prompt-injection detection and sandboxing for MCP servers."""
    settings = get_settings()
    # Logs go to stdout; keep them out of command output unless asked for.
    level = "DEBUG" if verbose else "ERROR"
    setup_logging(settings.model_copy(update={"log_level": level}))
    ctx.obj = settings


@main.command()
@click.argument("text", required=False)
@click.option(
    "--file",
    "file_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Read the payload from a file",
)
@click.option("--threshold", type=click.FloatRange(0.0, 1.0), help="Override the risk threshold")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_obj
def scan(
    settings: Settings,
    text: str | None,
    file_path: Path | None,
    threshold: float | None,
    as_json: bool,
) -> None:
    """Scan a payload for prompt injection.

    Exits with status 1 when the payload is classified malicious.
    """
    if file_path is not None:
        payload = file_path.read_text(encoding="utf-8", errors="replace")
    elif text is not None:
        payload = text
    elif not sys.stdin.isatty():
        payload = sys.stdin.read()
    else:
        raise click.UsageError("Provide TEXT, --file, or pipe a payload on stdin")

    detector = InjectionDetector(DetectorConfig.from_settings(settings))
    if threshold is not None:
        detector.update_config(threshold=threshold)
    result = detector.detect(payload)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        verdict = "MALICIOUS" if result.is_malicious else "clean"
        click.echo(f"Verdict:    {verdict}")
        click.echo(f"Risk score: {result.risk_score:.2f}")
        click.echo(f"Confidence: {result.confidence:.2f}")
        if result.truncated:
            click.echo("Note:       payload truncated before scanning")
        for finding in result.findings:
            click.echo(
                f"  - [{finding.category.value}] {finding.description} "
                f"(confidence {finding.confidence:.2f})"
            )

    if result.is_malicious:
        sys.exit(1)


@main.command()
def patterns() -> None:
    """List the built-in detection patterns."""
    for pattern in default_catalog():
        click.echo(f"{pattern.name:<24} {pattern.severity:<9} {pattern.category}")
        if pattern.description:
            click.echo(f"    {pattern.description}")


@main.command()
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="SQLite store to read (defaults to STORE_DB_PATH)",
)
@click.option("--days", type=click.IntRange(min=1), help="Time range in days")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.pass_obj
def report(settings: Settings, db_path: Path | None, days: int | None, as_json: bool) -> None:
    """Render a security report from a SQLite store."""
    path = db_path or Path(settings.store_db_path)
    if not path.exists():
        raise click.ClickException(f"No store found at {path}")

    security_report = asyncio.run(_build_report(settings, path, days))
    if as_json:
        click.echo(export_security_report(security_report))
    else:
        click.echo(format_security_report(security_report))


async def _build_report(settings: Settings, path: Path, days: int | None) -> SecurityReport:
    manager = SandboxManager.from_settings(
        settings,
        server_store=SQLiteRecordStore(path, namespace="sandbox"),
        violation_store=SQLiteRecordStore(path, namespace="violations"),
    )
    ledger = ReputationLedger.from_settings(
        settings, store=SQLiteRecordStore(path, namespace="reputation")
    )
    await manager.hydrate_all()
    await ledger.hydrate_all()
    return generate_security_report(
        manager.list_sandboxed_servers(),
        manager.get_violations(),
        time_range_days=days or settings.report_time_range_days,
        reputations=ledger.summary() if ledger.list_scores() else None,
    )


if __name__ == "__main__":
    main()
