from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click

from afkcode.backends.catalog import KNOWN_BACKENDS, parse_backend_order
from afkcode.config import DEFAULT_CONFIG_NAME, AfkcodeConfig, load_config, save_config
from afkcode.events import configure_logging
from afkcode.leasing.errors import LeasingError
from afkcode.leasing.parser import DEFAULT_CHECKLIST_NAME
from afkcode.leasing.registry import WorkLeasingRegistry, release_checkout
from afkcode.leasing.scanner import scan_all_checklists
from afkcode.leasing.selector import LeaseFilters
from afkcode.session import (
    BackendFactory,
    RunSession,
    default_backend_factory,
    interrupt_handlers,
)
from afkcode.verifier import RunStatus, SpiralOutcome


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _backend_factory(config: AfkcodeConfig, repo_root: Path) -> BackendFactory:
    return default_backend_factory(config, repo_root)


def _load(repo_root: Path, config_value: str) -> AfkcodeConfig:
    try:
        return load_config(_resolve_config_path(repo_root, config_value))
    except (OSError, ValueError, TypeError) as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc


@click.group()
@click.version_option(package_name="afkcode")
def cli() -> None:
    """Keep LLM coding agents working through a checklist while you are away."""


@cli.command("run")
@click.argument(
    "checklist", required=False, type=click.Path(dir_okay=False, path_type=Path)
)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
@click.option(
    "--tools",
    default=None,
    help=f"Comma-separated backend order. Known: {', '.join(KNOWN_BACKENDS)}.",
)
@click.option("--mode", type=click.Choice(["worker", "controller"]), default=None)
@click.option("--completion-token", default=None)
@click.option("--sleep-seconds", type=float, default=None)
@click.option("--num-instances", "-n", type=int, default=None)
@click.option("--warmup-delay", type=float, default=None)
@click.option("--gimme/--no-gimme", "gimme", default=None, help="Lease checklist items.")
@click.option("--gimme-path", default=None)
@click.option("--items-per-instance", type=int, default=None)
@click.option("--verify/--no-verify", "verify", default=None)
@click.option("--spiral/--no-spiral", "spiral", default=None)
@click.option("--max-spirals", type=int, default=None)
@click.option("--max-crash-retries", type=int, default=None)
@click.option("--squelch-seconds", type=float, default=None)
@click.option("--timeout-seconds", type=float, default=None)
@click.option("--log-file", default=None)
@click.option("--log-level", default=None)
@click.option("--gemini-model", default=None)
@click.option("--codex-model", default=None)
@click.option("--claude-model", default=None)
@click.option("--warp-model", default=None)
def run_command(
    checklist: Path | None,
    config_value: str,
    tools: str | None,
    mode: str | None,
    completion_token: str | None,
    sleep_seconds: float | None,
    num_instances: int | None,
    warmup_delay: float | None,
    gimme: bool | None,
    gimme_path: str | None,
    items_per_instance: int | None,
    verify: bool | None,
    spiral: bool | None,
    max_spirals: int | None,
    max_crash_retries: int | None,
    squelch_seconds: float | None,
    timeout_seconds: float | None,
    log_file: str | None,
    log_level: str | None,
    gemini_model: str | None,
    codex_model: str | None,
    claude_model: str | None,
    warp_model: str | None,
) -> None:
    """Run worker instances until one of them confirms the checklist is done."""
    repo_root = Path.cwd().resolve()
    config = _load(repo_root, config_value)

    if tools is not None:
        try:
            config.backends.order = parse_backend_order(tools)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--tools") from exc
    for name, model in (
        ("gemini", gemini_model),
        ("codex", codex_model),
        ("claude", claude_model),
        ("warp", warp_model),
    ):
        if model:
            config.backends.models[name] = model
    if squelch_seconds is not None:
        config.backends.squelch_seconds = squelch_seconds
    if timeout_seconds is not None:
        config.backends.timeout_seconds = timeout_seconds
    if mode is not None:
        config.loop.mode = mode  # type: ignore[assignment]
    if completion_token is not None:
        config.loop.completion_token = completion_token
    if sleep_seconds is not None:
        config.loop.sleep_seconds = sleep_seconds
    if max_crash_retries is not None:
        config.loop.max_crash_retries = max_crash_retries
    if num_instances is not None:
        config.parallel.num_instances = num_instances
    if warmup_delay is not None:
        config.parallel.warmup_delay = warmup_delay
    if gimme is not None:
        config.leasing.enabled = gimme
    if items_per_instance is not None:
        config.leasing.items_per_instance = items_per_instance
    if gimme_path is not None:
        config.leasing.base_path = gimme_path
    elif checklist is not None:
        config.leasing.base_path = str(checklist)
    if verify is not None:
        config.verify.enabled = verify
    if spiral is not None:
        config.verify.spiral = spiral
        if spiral:
            config.verify.enabled = True
    if max_spirals is not None:
        config.verify.max_spirals = max_spirals
    if log_file is not None:
        config.logging.log_file = log_file
    if log_level is not None:
        config.logging.level = log_level

    configure_logging(config.logging.level)

    if checklist is not None:
        checklist = checklist if checklist.is_absolute() else repo_root / checklist
        if not checklist.exists():
            raise click.ClickException(f"Checklist not found: {checklist}")

    try:
        session = RunSession.create(
            config,
            checklist,
            working_directory=repo_root,
            backend_factory=_backend_factory(config, repo_root),
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    try:
        outcome = asyncio.run(_run_session(session))
    except LeasingError as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_outcome(outcome)
    if outcome.status.exit_code:
        raise SystemExit(outcome.status.exit_code)


async def _run_session(session: RunSession) -> SpiralOutcome:
    with interrupt_handlers(session.shutdown):
        return await session.run()


def _echo_outcome(outcome: SpiralOutcome) -> None:
    messages = {
        RunStatus.COMPLETE: "All tasks complete.",
        RunStatus.BOUNDED_INCOMPLETE: "Stopped after the maximum number of spirals.",
        RunStatus.INCOMPLETE: "Verifier found new work; rerun to continue.",
        RunStatus.INTERRUPTED: "Interrupted.",
        RunStatus.FAILED: "No instance confirmed completion.",
    }
    click.echo(f"Status: {outcome.status}")
    click.echo(messages[outcome.status])
    if outcome.spirals:
        click.echo(f"Spirals: {outcome.spirals}")
    for index, phase in enumerate(outcome.phases, start=1):
        click.echo(f"Phase {index}:")
        for line in phase.describe().splitlines():
            click.echo(f"  {line}")


@cli.command("scan")
@click.argument("path", required=False, default=".", type=click.Path(path_type=Path))
@click.option("--name", "checklist_name", default=DEFAULT_CHECKLIST_NAME, show_default=True)
@click.option("--json", "as_json", is_flag=True, default=False)
def scan_command(path: Path, checklist_name: str, as_json: bool) -> None:
    """Count incomplete items in every checklist below PATH."""
    if not path.exists():
        raise click.ClickException(f"Path not found: {path}")
    result = scan_all_checklists(path, checklist_name)
    if as_json:
        click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        return
    click.echo(result.summary())
    for file_path, count in result.incomplete_by_file.items():
        click.echo(f"  {file_path}: {count}")


@cli.command("gimme")
@click.argument("path", required=False, default=".", type=click.Path(path_type=Path))
@click.option("--count", "-n", type=int, default=1, show_default=True)
@click.option("--name", "checklist_name", default=DEFAULT_CHECKLIST_NAME, show_default=True)
@click.option("--include-unverified", is_flag=True, default=False)
@click.option("--include-blocked", is_flag=True, default=False)
@click.option("--instance", "instance_id", default="cli", show_default=True)
def gimme_command(
    path: Path,
    count: int,
    checklist_name: str,
    include_unverified: bool,
    include_blocked: bool,
    instance_id: str,
) -> None:
    """Claim up to COUNT items and print their checkout ids."""
    if count < 1:
        raise click.BadParameter("must be at least 1", param_hint="--count")
    if not path.exists():
        raise click.ClickException(f"Path not found: {path}")
    registry = WorkLeasingRegistry(
        path,
        checklist_name=checklist_name,
        filters=LeaseFilters(unverified=include_unverified, blocked=include_blocked),
    )
    try:
        items = registry.claim(count, instance_id)
    except LeasingError as exc:
        raise click.ClickException(str(exc)) from exc
    if not items:
        click.echo("No claimable items.")
        return
    for item in items:
        click.echo(f"[ip:{item.checkout_id}] {item.content} ({item.location()})")
        for sub_item in item.sub_items:
            click.echo(f"    {sub_item.strip()}")


@cli.command("release")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.argument("checkout_id")
@click.option("--name", "checklist_name", default=DEFAULT_CHECKLIST_NAME, show_default=True)
def release_command(path: Path, checkout_id: str, checklist_name: str) -> None:
    """Put a claimed item back to [ ] by its checkout id."""
    try:
        released = release_checkout(path, checkout_id, checklist_name)
    except LeasingError as exc:
        raise click.ClickException(str(exc)) from exc
    if released is None:
        raise click.ClickException(f"Checkout {checkout_id} not found under {path}")
    click.echo(f"Released {checkout_id} in {released}")


@cli.command("init-config")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
@click.option("--force", is_flag=True, default=False)
def init_config_command(config_value: str, force: bool) -> None:
    """Write a configuration file with every default filled in."""
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    if config_path.exists() and not force:
        raise click.ClickException(f"{config_path} already exists (use --force to overwrite)")
    save_config(config_path, AfkcodeConfig.default())
    click.echo(f"Wrote {config_path}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
