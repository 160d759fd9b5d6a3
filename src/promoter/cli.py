"""Release promoter CLI (promoter).

Usage:
    promoter promote --app myapp --version 1.2.3 --env staging
    promoter promote --app myapp --all-auto --no-poll
    promoter environments --environments-dir ./environments

Results are printed to stdout as JSON; logs go to stderr.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from .config import ConfigurationError, PromoteConfig
from .engine import PromotionRequest
from .environments import load_environments
from .errors import PromotionError
from .main import EXIT_INVALID, build_engine, main, setup_logging
from .strategy import PromotionStrategyEvaluator

CLI_VERSION = "0.1.0"


def load_config(**overrides: Any) -> PromoteConfig:
    """Load configuration from the environment, then apply CLI overrides.

    Raises:
        click.exceptions.Exit: With code 2 if the configuration is invalid.
    """
    try:
        config = PromoteConfig.from_env()
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(config, **changes) if changes else config
    except ConfigurationError as e:
        click.echo(str(e), err=True)
        raise click.exceptions.Exit(EXIT_INVALID) from e


def echo_json(document: dict[str, Any]) -> None:
    click.echo(json.dumps(document, indent=2, default=str))


@click.group()
@click.version_option(version=CLI_VERSION, prog_name="promoter")
def cli() -> None:
    """Release promoter - advance application versions through GitOps environments."""


@cli.command()
@click.option("--app", "application", required=True, help="Application to promote")
@click.option("--version", "version", default="", help="Version to promote (default: latest)")
@click.option("--env", "environment", default="", help="Target environment name")
@click.option("--all-auto", is_flag=True, help="Promote to all Automatic environments")
@click.option("--no-poll", is_flag=True, help="Do not wait for merge or request auto-merge")
@click.option("--batch-mode", "-b", is_flag=True, help="Non-interactive run")
@click.option("--alias", default=None, help="Declaration key to use instead of the app name")
@click.option(
    "--environments-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory of Environment YAML records",
)
@click.option(
    "--versions-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Version stream checkout",
)
@click.option("--timeout", "timeout_seconds", type=float, default=None, help="Overall timeout")
@click.option("--github-token", envvar="GITHUB_TOKEN", default="", show_envvar=True)
@click.option("--github-api-url", envvar="GITHUB_API_URL", default=None, show_envvar=True)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def promote(
    application: str,
    version: str,
    environment: str,
    all_auto: bool,
    no_poll: bool,
    batch_mode: bool,
    alias: str | None,
    environments_dir: Path | None,
    versions_dir: Path | None,
    timeout_seconds: float | None,
    github_token: str,
    github_api_url: str | None,
    verbose: bool,
) -> None:
    """Promote an application version into one or more environments."""
    setup_logging(logging.DEBUG if verbose else logging.INFO, stream=sys.stderr)

    config = load_config(
        environments_dir=environments_dir,
        versions_dir=versions_dir,
        timeout_seconds=timeout_seconds,
    )

    try:
        request = PromotionRequest(
            application=application,
            version=version,
            environment=environment,
            all_automatic=all_auto,
            batch_mode=batch_mode,
            no_poll=no_poll,
            alias=alias,
        )
        engine = build_engine(config, github_token, github_api_url)
    except (PromotionError, ConfigurationError) as e:
        click.echo(str(e), err=True)
        sys.exit(EXIT_INVALID)

    code, document = asyncio.run(main(engine, request))
    echo_json(document)
    sys.exit(code)


@cli.command()
@click.option(
    "--environments-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory of Environment YAML records",
)
def environments(environments_dir: Path | None) -> None:
    """List environments and whether "--all-auto" would promote to them."""
    config = load_config(environments_dir=environments_dir)
    if config.environments_dir is None:
        raise click.UsageError("--environments-dir or PROMOTE_ENVIRONMENTS_DIR is required")

    try:
        records = load_environments(config.environments_dir, config.registry_namespace)
    except PromotionError as e:
        raise click.ClickException(str(e)) from e

    automatic = {env.name for env in PromotionStrategyEvaluator().select_automatic(records)}
    for env in sorted(records, key=lambda e: (e.order, e.name)):
        marker = "*" if env.name in automatic else " "
        source = env.source.url or "(dev repository)"
        click.echo(
            f"{marker} {env.name:<16} {env.promotion_strategy.value:<10} "
            f"{env.target_namespace:<20} {source}"
        )


# =============================================================================
# Entry Point
# =============================================================================


def run() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    run()
