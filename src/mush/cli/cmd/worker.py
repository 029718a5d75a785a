"""Worker commands: run the interactive harness against the job queue."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape

from ...api_client import RunnerClient
from ...core.config import Config, ConfigError, HarnessSettings, load_config
from ...harness import BundleSummary, Harness, Registry, default_registry
from ...harness.providers import ProviderError
from ...runtime import bootstrap_logging
from ...util.error import (
    EXIT_CONFIG,
    EXIT_USAGE,
    CLIError,
    exit_code_for,
    format_error,
    format_unknown_error,
    harness_unavailable,
    not_authenticated,
)
from ...util.log import Log

app = typer.Typer(help="Run the job worker")
console = Console(stderr=True)
output = Console()
log = Log.create({"service": "cli.worker"})

BUNDLE_MANIFEST = "manifest.json"


def _fail(error: BaseException) -> None:
    message = format_error(error) or format_unknown_error(error)
    console.print(f"[red]Error:[/red] {escape(message)}", highlight=False)
    raise typer.Exit(exit_code_for(error))


def load_bundle_summary(bundle_dir: Optional[str]) -> BundleSummary:
    """Summary of an installed bundle, read from its manifest when present."""
    if not bundle_dir:
        return BundleSummary()
    root = Path(bundle_dir)
    if not root.is_dir():
        raise CLIError(f"Bundle directory not found: {bundle_dir}", EXIT_USAGE)
    path = root / BUNDLE_MANIFEST
    if not path.is_file():
        return BundleSummary(name=root.name)
    try:
        manifest = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise CLIError(f"Invalid bundle manifest: {path}", EXIT_CONFIG, cause=e) from e
    if not isinstance(manifest, dict):
        raise CLIError(f"Invalid bundle manifest: {path}", EXIT_CONFIG)
    return BundleSummary.from_manifest(manifest)


def resolve_harnesses(registry: Registry, requested: List[str]) -> tuple[str, ...]:
    """Validate requested harness names, or pick every available one."""
    if not requested:
        names = tuple(registry.available_names())
        if not names:
            raise CLIError(
                "No harness is available on this machine",
                EXIT_USAGE,
                hint=f"Install one of: {', '.join(registry.names())}",
            )
        return names

    names: list[str] = []
    for name in requested:
        info = registry.lookup(name)
        if info is None:
            raise CLIError(
                f"Unknown harness '{name}'",
                EXIT_USAGE,
                hint=f"Known harnesses: {', '.join(registry.names())}",
            )
        if not info.available():
            raise harness_unavailable(name)
        if name not in names:
            names.append(name)
    return tuple(names)


async def start_worker(
    config: Config,
    *,
    habitat: str,
    queue: str,
    harnesses: List[str],
    api_url: Optional[str],
    force_sidebar: bool,
    bundle_dir: Optional[str],
) -> None:
    if not config.api.key:
        raise not_authenticated()
    if not habitat and not queue:
        raise CLIError("Either --habitat or --queue is required", EXIT_USAGE)

    try:
        registry = default_registry()
    except ProviderError as e:
        raise CLIError("Failed to load harness providers", EXIT_CONFIG, cause=e) from e
    names = resolve_harnesses(registry, harnesses)
    bundle = load_bundle_summary(bundle_dir)

    client = RunnerClient(base_url=api_url or config.api.url, api_key=config.api.key)
    log.info("starting worker", {"habitat": habitat, "queue": queue, "harnesses": list(names)})
    try:
        harness = Harness(
            HarnessSettings.from_config(config),
            client,
            registry,
            harnesses=names,
            habitat_id=habitat,
            queue_id=queue,
            bundle=bundle,
            bundle_dir=bundle_dir or "",
            force_sidebar=force_sidebar,
        )
        await harness.run()
    finally:
        await client.aclose()


@app.command("start")
def start_command(
    habitat: str = typer.Option("", "--habitat", help="Habitat ID to claim jobs for"),
    queue: str = typer.Option("", "--queue", help="Queue ID to claim jobs from (wins over --habitat)"),
    harness: Optional[List[str]] = typer.Option(
        None,
        "--harness",
        help="Harness type to run (repeatable); defaults to every installed one",
    ),
    api_url: Optional[str] = typer.Option(None, "--api-url", help="Override the API base URL"),
    force_sidebar: bool = typer.Option(
        False,
        "--force-sidebar",
        help="Show the sidebar without probing for margin support",
    ),
    bundle_dir: Optional[str] = typer.Option(None, "--bundle-dir", help="Installed bundle directory"),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to a config file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="DEBUG, INFO, WARN or ERROR"),
) -> None:
    """Claim and execute jobs in this terminal."""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        _fail(CLIError(str(e), EXIT_CONFIG))
        return
    try:
        bootstrap_logging(config, level=log_level)
    except ValueError as e:
        _fail(CLIError(str(e), EXIT_USAGE))
        return

    try:
        asyncio.run(start_worker(
            config,
            habitat=habitat,
            queue=queue,
            harnesses=harness or [],
            api_url=api_url,
            force_sidebar=force_sidebar,
            bundle_dir=bundle_dir,
        ))
    except KeyboardInterrupt:
        raise typer.Exit(130)
    except CLIError as e:
        _fail(e)
    except Exception as e:
        log.error("worker failed", {"error": e})
        _fail(e)


@app.command("harnesses")
def harnesses_command() -> None:
    """List known harness types and whether they are installed."""
    try:
        registry = default_registry()
    except ProviderError as e:
        _fail(CLIError("Failed to load harness providers", EXIT_CONFIG, cause=e))
        return
    for name in registry.names():
        info = registry.lookup(name)
        state = "[green]available[/green]" if info.available() else "[yellow]not installed[/yellow]"
        output.print(f"  [cyan]{name}[/cyan] {state}")
