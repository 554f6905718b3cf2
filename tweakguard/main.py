"""
Tweakguard — CLI entrypoint.

Usage:
    tweakguard --help
    tweakguard run selection.json --force-dangerous
    tweakguard precheck
    tweakguard safety validate script.ps1 --operation tweak.example
"""

from __future__ import annotations

import json
import os
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click

from tweakguard import __version__
from tweakguard.core.observability.logging_config import setup_logging

_STREAM_STYLES = {
    "Error": ("✗", "red"),
    "Warning": ("⚠️ ", "yellow"),
    "Security": ("🔒", "magenta"),
    "DryRun": ("⊘", "cyan"),
    "Info": ("•", None),
}
_VERBOSE_ONLY_STREAMS = {"Trace", "Command", "Debug", "Verbose", "Progress"}


@click.group()
@click.version_option(version=__version__, prog_name="tweakguard")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--root",
    "root",
    type=click.Path(file_okay=False),
    default=None,
    help="Runtime root holding data/, Data/, logs/ and runtime/ (default: cwd).",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, quiet: bool, debug: bool, root: str | None) -> None:
    """Tweakguard — guarded, reversible Windows configuration automation."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug

    from tweakguard.core.context import set_runtime_root

    set_runtime_root(Path(root).resolve() if root else Path.cwd())

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("TWG_LOG_LEVEL", "WARNING")

    setup_logging(
        level=level,
        log_file=os.environ.get("TWG_LOG_FILE"),
        log_file_level=os.environ.get("TWG_LOG_FILE_LEVEL"),
        quiet_third_party=not debug,
    )


def _echo_event(verbose: bool):
    """Console subscriber that mirrors engine events to the terminal."""

    def _echo(event) -> None:
        if event.stream in _VERBOSE_ONLY_STREAMS and not verbose:
            return
        marker, color = _STREAM_STYLES.get(event.stream, ("│", None))
        click.secho(f"   {marker} {event.text}", fg=color, err=event.stream == "Error")

    return _echo


@contextmanager
def _sigint_cancels(coordinator) -> Iterator[None]:
    """Route Ctrl+C to the coordinator's active token."""
    previous = signal.getsignal(signal.SIGINT)
    try:
        signal.signal(signal.SIGINT, lambda _sig, _frame: coordinator.cancel())
    except ValueError:
        # Not the main thread; leave the default handler in place
        previous = None
    try:
        yield
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


# ── run ───────────────────────────────────────────────────────────


@cli.command()
@click.argument("config_path", metavar="CONFIG")
@click.option("--force-dangerous", is_flag=True, help="Allow dangerous operations the config confirms.")
@click.option("--dry-run", is_flag=True, help="Validate and plan, but execute nothing.")
@click.option("--undo", is_flag=True, help="Run undo steps instead of run steps.")
@click.option("--process-mode", is_flag=True, help="Run scripts in an external PowerShell process.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def run(
    ctx: click.Context,
    config_path: str,
    force_dangerous: bool,
    dry_run: bool,
    undo: bool,
    process_mode: bool,
    as_json: bool,
) -> None:
    """Run a selection config unattended.

    CONFIG is a .json selection document; relative paths resolve
    under runtime/.

    Examples:

        tweakguard run selection.json

        tweakguard run selection.json --force-dangerous

        tweakguard run selection.json --undo --dry-run
    """
    from tweakguard.core.observability.console import ConsoleStream
    from tweakguard.core.reliability.cancellation import ExecutionCoordinator
    from tweakguard.core.use_cases.run import ExitCode, build_engine, run_selection

    console = ConsoleStream()
    if not as_json and not ctx.obj.get("quiet"):
        console.subscribe(_echo_event(ctx.obj.get("verbose", False)))

    engine = ctx.obj.get("engine_factory", build_engine)
    coordinator = ExecutionCoordinator()
    token = coordinator.begin()
    try:
        with _sigint_cancels(coordinator):
            result = run_selection(
                config_path,
                token,
                force_dangerous=force_dangerous,
                dry_run=dry_run,
                undo=undo,
                prefer_process_mode=process_mode,
                engine=_lazy_engine(engine, console),
            )
    finally:
        coordinator.complete()

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(int(result.exit_code))

    if result.exit_code == ExitCode.CONFIG_ERROR:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(int(result.exit_code))

    mode_label = "[dry-run] " if dry_run else ""
    verb = "undo" if undo else "run"
    click.secho(f"\n⚡ {mode_label}{verb} — {result.config_path}", fg="cyan", bold=True)
    click.echo(f"   Operations: {len(result.operations)}")
    for op_id in result.incompatible:
        click.secho(f"   ⊘ {op_id} ", fg="yellow", nl=False)
        click.echo("(incompatible)")
    click.echo()

    batch = result.batch
    if batch is not None:
        for item in batch.results:
            label = f"{item.operation_id}" + (" (rollback)" if item.is_rollback else "")
            if item.skipped:
                click.secho(f"   ⊘ {label} ", fg="yellow", nl=False)
            elif item.success:
                click.secho(f"   ✓ {label} ", fg="green", nl=False)
            else:
                click.secho(f"   ✗ {label} ", fg="red", nl=False)
            click.echo(f"— {item.message}")
        click.echo()

    if result.ok:
        click.secho("✅ Batch completed", fg="green", bold=True)
        if batch is not None and batch.requires_reboot:
            click.secho("⚠️  A reboot is required to finish applying changes.", fg="yellow")
    elif result.cancelled:
        click.secho("⚠️  Batch cancelled", fg="yellow", bold=True)
    else:
        click.secho(f"❌ {result.error or 'Batch failed'}", fg="red", bold=True)

    click.echo()
    sys.exit(int(result.exit_code))


def _lazy_engine(factory, console):
    from tweakguard.core.config.loader import ConfigError

    try:
        return factory(console)
    except ConfigError:
        # run_selection rebuilds and reports it as a config error
        return None


# ── precheck ──────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def precheck(as_json: bool) -> None:
    """Check whether this machine can run a batch."""
    from tweakguard.core.use_cases.run import run_environment_precheck

    result = run_environment_precheck()

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
        sys.exit(0 if result.ok else 5)

    if result.ok:
        click.secho(f"✅ {result.message}", fg="green", bold=True)
        return

    click.secho(f"❌ {result.message}", fg="red", bold=True)
    sys.exit(5)


# ── audit ─────────────────────────────────────────────────────────


@cli.command()
@click.option("--limit", "-n", default=20, type=int, help="Number of entries to show.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def audit(limit: int, as_json: bool) -> None:
    """Show recent script-audit entries."""
    from tweakguard.core.use_cases.safety import recent_audit_entries

    result = recent_audit_entries(limit)

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return

    entries = result["entries"]
    if not entries:
        click.secho("No script-audit entries.", fg="yellow")
        return

    click.secho(
        f"\n📋 Script audit — {len(entries)} of {result['total']} ({result['blocked']} blocked)",
        fg="cyan", bold=True,
    )
    for entry in entries:
        flags = []
        if entry["dry_run"]:
            flags.append("dry-run")
        if entry["process_mode"]:
            flags.append("process")
        flag_label = f" [{', '.join(flags)}]" if flags else ""
        if entry["allowed"]:
            click.secho("   ✓ ", fg="green", nl=False)
        else:
            click.secho("   ✗ ", fg="red", nl=False)
        click.echo(
            f"{entry['timestamp']}  {entry['operation_id']}/{entry['step_name']}"
            f"  {entry['script_hash'][:12]}{flag_label}"
        )
        if not entry["allowed"]:
            click.echo(f"     │ {entry['block_reason']}")
    click.echo()


# ── Register sub-command groups from tweakguard/ui/cli/ ───────────

from tweakguard.ui.cli.safety import safety  # noqa: E402

cli.add_command(safety)


if __name__ == "__main__":
    cli()
