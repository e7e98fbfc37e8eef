"""converge command line interface.

Usage:
    converge validate infra/            # Validate desired state, no provider calls
    converge plan infra/                # Show the changeset
    converge apply infra/ --yes         # Converge
    converge destroy --target ID --yes  # Delete tracked resources
    converge state list                 # Inspect recorded state

Exit codes:
    0  success
    1  invalid input: configuration, desired state, dependency cycle,
       refused delete, change limit
    2  partial failure: some resources Failed, Quarantined or left Pending
    3  fatal: state store unusable or unexpected error
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Callable
from dataclasses import asdict
from pathlib import Path
from typing import Any

import click

from .config import DEFAULT_STATE_DIR, Config, ConfigurationError, DriftPolicy
from .diff import Action, ChangeSet, ReferencedResourceError, ResourceChange
from .graph import DependencyError
from .main import LOG_FORMATS, get_managed_identity_credential, run_until_signal, setup_logging
from .models import DesiredState
from .provider import ProviderAdapter
from .reconciler import ChangeLimitExceeded, Reconciler, RunSummary
from .spec_loader import SpecLoadError, load_desired_state
from .state_store import FileStateStore, StateStoreError
from .validation import ValidationError

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_INVALID = 1
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 3

# Errors caused by the operator's input; nothing was mutated
INPUT_ERRORS = (
    ConfigurationError,
    SpecLoadError,
    ValidationError,
    DependencyError,
    ReferencedResourceError,
    ChangeLimitExceeded,
)

ACTION_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DELETE: "-",
    Action.NOOP: " ",
}
REPLACE_SYMBOL = "-/+"

ProviderFactory = Callable[[Config], ProviderAdapter]


def build_azure_provider(config: Config) -> ProviderAdapter:
    """Azure adapter authenticated with a managed identity."""
    from .azure_provider import AzureProviderAdapter

    return AzureProviderAdapter(get_managed_identity_credential(), subscription_id=config.project)


def exit_code_for(error: Exception) -> int:
    if isinstance(error, INPUT_ERRORS):
        return EXIT_INVALID
    return EXIT_FATAL


def _report_error(error: Exception) -> int:
    code = exit_code_for(error)
    if code == EXIT_FATAL and not isinstance(error, StateStoreError):
        logger.exception("Unexpected error", extra={"error": str(error)})
    click.echo(f"Error: {error}", err=True)
    return code


# =============================================================================
# Output formatting
# =============================================================================


def format_change(change: ResourceChange) -> list[str]:
    symbol = REPLACE_SYMBOL if change.replace else ACTION_SYMBOLS[change.action]
    action = "Replace" if change.replace else change.action.value
    lines = [f"{symbol:>3} {action:<8} {change.resource_id}"]
    if change.replace_reason:
        lines.append(f"      reason: {change.replace_reason}")
    for name, delta in change.delta.items():
        lines.append(f"      {name}: {delta.old!r} -> {delta.new!r}")
    if change.drift is not None:
        lines.append(f"      drift: {change.drift}")
    return lines


def format_changeset(changeset: ChangeSet) -> list[str]:
    lines = []
    for change in changeset:
        if change.action is Action.NOOP and change.drift is None:
            continue
        lines.extend(format_change(change))
    summary = changeset.summary()
    lines.append(
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['delete']} to delete, "
        f"{summary['noop']} unchanged, {summary['drift']} drifted."
    )
    return lines


def format_summary(summary: RunSummary) -> list[str]:
    lines = []
    for outcome in summary.outcomes.values():
        action = "Replace" if outcome.replace else outcome.action.value
        line = f"{outcome.status.value:<12} {action:<8} {outcome.resource_id}"
        if outcome.attempts > 1:
            line += f" (attempts: {outcome.attempts})"
        lines.append(line)
        if outcome.error:
            lines.append(f"      error: {outcome.error}")
    counts = summary.counts()
    title = summary.command.capitalize()
    lines.append(
        f"{title}: {counts['Applied']} applied, {counts['Failed']} failed, "
        f"{counts['Quarantined']} quarantined, {counts['Pending']} pending "
        f"({summary.duration_seconds:.1f}s)"
    )
    if summary.cancelled:
        lines.append("Run was cancelled; pending resources were not attempted.")
    return lines


def _echo_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


# =============================================================================
# Shared options
# =============================================================================


def target_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options that override the provider target and state location."""
    func = click.option("--state-dir", type=click.Path(path_type=Path), help="State store directory")(func)
    func = click.option("--resource-group", help="Resource group (Azure)")(func)
    func = click.option("--region", help="Default region")(func)
    func = click.option("--project", help="Project / subscription id")(func)
    return func


def build_config(desired: DesiredState | None = None, **options: Any) -> Config:
    """Layer CLI options over the environment over the document's defaults."""
    if desired is not None:
        if not options.get("project") and not os.environ.get("CONVERGE_PROJECT"):
            options["project"] = desired.project
        if not options.get("region") and not os.environ.get("CONVERGE_REGION"):
            options["region"] = desired.region
    return Config.from_env(**options)


def _reconciler(ctx: click.Context, config: Config) -> Reconciler:
    factory: ProviderFactory = ctx.obj.get("provider_factory", build_azure_provider)
    return Reconciler(config, factory(config), FileStateStore(config.state_dir))


def _state_store(state_dir: Path | None) -> FileStateStore:
    return FileStateStore(state_dir or Path(os.environ.get("CONVERGE_STATE_DIR", DEFAULT_STATE_DIR)))


# =============================================================================
# Commands
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="converge")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
@click.option("--log-format", type=click.Choice(LOG_FORMATS), default="json", show_default=True)
@click.pass_context
def cli(ctx: click.Context, log_level: str, log_format: str) -> None:
    """Declarative infrastructure reconciliation.

    \b
    Quick Start:
        converge validate infra/
        converge plan infra/
        converge apply infra/
    """
    setup_logging(log_level, log_format)
    ctx.ensure_object(dict)


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
def validate(path: Path) -> None:
    """Validate a desired-state file or directory."""
    try:
        desired = load_desired_state(path)
    except Exception as e:
        raise click.exceptions.Exit(_report_error(e)) from e

    for warning in desired.warnings:
        click.echo(f"Warning: {warning}", err=True)
    click.echo(f"Valid: {len(desired)} resource(s).")


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@target_options
@click.option("--refresh/--no-refresh", default=None, help="Observe live state to detect drift")
@click.option("--drift-policy", type=click.Choice([p.value for p in DriftPolicy]), default=None)
@click.pass_context
def plan(ctx: click.Context, path: Path, drift_policy: str | None, **options: Any) -> None:
    """Show the changes apply would make."""
    try:
        desired = load_desired_state(path)
        config = build_config(desired, drift_policy=_policy(drift_policy), **options)
        reconciler = _reconciler(ctx, config)
        changeset = asyncio.run(reconciler.plan(desired))
    except Exception as e:
        raise click.exceptions.Exit(_report_error(e)) from e

    if not changeset.has_changes and not changeset.drifted:
        click.echo("No changes. Infrastructure matches the desired state.")
        return
    _echo_lines(format_changeset(changeset))


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@target_options
@click.option("--workers", "worker_count", type=int, default=None, help="Concurrent provider calls")
@click.option("--max-attempts", type=int, default=None, help="Attempts per resource on transient errors")
@click.option("--drift-policy", type=click.Choice([p.value for p in DriftPolicy]), default=None)
@click.option("--refresh/--no-refresh", default=None, help="Observe live state to detect drift")
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt")
@click.pass_context
def apply(ctx: click.Context, path: Path, drift_policy: str | None, yes: bool, **options: Any) -> None:
    """Converge infrastructure to the desired state."""
    try:
        desired = load_desired_state(path)
        config = build_config(desired, drift_policy=_policy(drift_policy), **options)
        reconciler = _reconciler(ctx, config)

        if not yes:
            changeset = asyncio.run(reconciler.plan(desired))
            if not changeset.has_changes:
                click.echo("No changes. Infrastructure matches the desired state.")
                return
            _echo_lines(format_changeset(changeset))
            if not click.confirm("Apply these changes?"):
                click.echo("Apply cancelled.")
                return

        summary = asyncio.run(run_until_signal(lambda: reconciler.apply(desired), reconciler.shutdown))
    except click.Abort:
        raise
    except Exception as e:
        raise click.exceptions.Exit(_report_error(e)) from e

    _echo_lines(format_summary(summary))
    if summary.exit_code != EXIT_SUCCESS:
        raise click.exceptions.Exit(summary.exit_code)


@cli.command()
@target_options
@click.option("--target", "targets", multiple=True, help="Resource id to delete (repeatable)")
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt")
@click.pass_context
def destroy(ctx: click.Context, targets: tuple[str, ...], yes: bool, **options: Any) -> None:
    """Delete tracked resources in reverse dependency order."""
    try:
        config = build_config(**options)
        what = ", ".join(targets) if targets else "ALL tracked resources"
        if not yes and not click.confirm(f"Destroy {what}?"):
            click.echo("Destroy cancelled.")
            return
        reconciler = _reconciler(ctx, config)
        summary = asyncio.run(
            run_until_signal(lambda: reconciler.destroy(list(targets) or None), reconciler.shutdown)
        )
    except click.Abort:
        raise
    except Exception as e:
        raise click.exceptions.Exit(_report_error(e)) from e

    _echo_lines(format_summary(summary))
    if summary.exit_code != EXIT_SUCCESS:
        raise click.exceptions.Exit(summary.exit_code)


def _policy(value: str | None) -> DriftPolicy | None:
    return DriftPolicy(value) if value else None


# =============================================================================
# State Commands
# =============================================================================


@cli.group()
def state() -> None:
    """Inspect recorded state."""
    pass


@state.command("list")
@click.option("--state-dir", type=click.Path(path_type=Path), help="State store directory")
def state_list(state_dir: Path | None) -> None:
    """List tracked resources."""
    try:
        records = _state_store(state_dir).load()
    except StateStoreError as e:
        raise click.exceptions.Exit(_report_error(e)) from e

    if not records:
        click.echo("No tracked resources.")
        return
    for rid in sorted(records):
        record = records[rid]
        marker = "  [error]" if record.last_error else ""
        click.echo(f"{rid}  {record.provider_id}  {record.last_applied_at}{marker}")


@state.command("show")
@click.argument("resource_id")
@click.option("--state-dir", type=click.Path(path_type=Path), help="State store directory")
def state_show(resource_id: str, state_dir: Path | None) -> None:
    """Show the record and last failure of one resource."""
    store = _state_store(state_dir)
    try:
        record = store.get(resource_id)
        failure = next((f for f in store.failures() if f.resource_id == resource_id), None)
    except StateStoreError as e:
        raise click.exceptions.Exit(_report_error(e)) from e

    if record is None and failure is None:
        click.echo(f"Error: {resource_id} is not tracked", err=True)
        raise click.exceptions.Exit(EXIT_INVALID)

    output: dict[str, Any] = {"record": record.to_dict() if record else None}
    if failure is not None:
        output["last_failure"] = asdict(failure)
    click.echo(json.dumps(output, indent=2, sort_keys=True))
