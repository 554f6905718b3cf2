"""
CLI commands for the safety layer — validator, backups, compensation.

Thin wrappers over ``tweakguard.core.use_cases.safety``.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click


@click.group()
def safety() -> None:
    """Safety — validate scripts, list backups, compensate."""


# ── Validate ────────────────────────────────────────────────────


@safety.command()
@click.argument("script_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--operation", "operation_id", required=True, help="Operation id the script would run under.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def validate(script_file: str, operation_id: str, as_json: bool) -> None:
    """Run the script safety validator against SCRIPT_FILE.

    Examples:

        tweakguard safety validate apply.ps1 --operation tweak.disable-telemetry
    """
    from tweakguard.core.use_cases.safety import validate_script_file

    result = validate_script_file(Path(script_file), operation_id)

    if as_json:
        click.echo(json.dumps(result, indent=2))
        sys.exit(0 if result.get("allowed") else 1)

    if "error" in result:
        click.secho(f"❌ {result['error']}", fg="red")
        sys.exit(1)

    click.echo(f"   Operation: {result['operation_id']}")
    click.echo(f"   SHA-256:   {result['script_hash']}")
    if result["allowed"]:
        click.secho("✅ Allowed", fg="green", bold=True)
        return

    click.secho("❌ Blocked", fg="red", bold=True)
    click.echo(f"   {result['reason']}")
    sys.exit(1)


# ── Backups ─────────────────────────────────────────────────────


@safety.command()
@click.option("--operation", "operation_id", default=None, help="Only backups for this operation.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def backups(operation_id: str | None, as_json: bool) -> None:
    """List safety-backup folders, newest first."""
    from tweakguard.core.use_cases.safety import list_safety_backups

    result = list_safety_backups(operation_id)

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return

    if not result["backups"]:
        click.secho("No safety backups found.", fg="yellow")
        return

    click.secho(f"\n💾 Safety backups ({result['count']})", fg="cyan", bold=True)
    click.echo(f"   {result['backup_root']}")
    click.echo()
    for backup in result["backups"]:
        click.secho(f"   • {backup['folder']}", fg="white", bold=True)
        if "operation_id" in backup:
            click.echo(f"     {backup['operation_id']}/{backup['step_name']}  at {backup['created_at']}")
        else:
            click.secho("     ⚠️  manifest unreadable", fg="yellow")
        click.echo(f"     {backup['files']} file(s)")
    click.echo()


# ── Compensate ──────────────────────────────────────────────────


@safety.command()
@click.argument("operation_id")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def compensate(operation_id: str, as_json: bool) -> None:
    """Restore OPERATION_ID's state from its newest safety backups."""
    from tweakguard.core.use_cases.safety import compensate_operation

    result = compensate_operation(operation_id)

    if as_json:
        click.echo(json.dumps(result, indent=2))
        sys.exit(0 if result["success"] else 1)

    if result["success"]:
        click.secho(f"✅ {result['message']}", fg="green", bold=True)
        return

    if not result["attempted"]:
        click.secho(f"⊘ {result['message']}", fg="yellow")
    else:
        click.secho(f"❌ {result['message']}", fg="red", bold=True)
    sys.exit(1)
