#!/usr/bin/env python3
"""
otel-job-sidecar - Main entry point.
"""
import logging
import sys

import click
import yaml

from sidecar.ci_host import ActionsHost
from sidecar.lifecycle import Sidecar, load_config
from sidecar.logging_utils import setup_logging
from sidecar.query_layer import render_macros

# Setup logging will be called in cli()
logger = logging.getLogger(__name__)


def _file_logging_settings(config_path):
    """Logging settings from the config file, before full validation."""
    try:
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
        return (config_data.get('sidecar') or {}).get('logging') or {}
    except Exception:
        # Invalid files are reported by the command itself
        return {}


@click.group()
@click.option(
    '--config', '-c',
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help='Optional sidecar configuration file (action inputs override it)'
)
@click.option(
    '--log-level', '-l',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    help='Override log level from config'
)
@click.option(
    '--state-file',
    default=None,
    type=click.Path(dir_okay=False),
    help='Lifecycle state file shared by setup and teardown'
)
@click.pass_context
def cli(ctx, config, log_level, state_file):
    """Telemetry sidecar for CI jobs."""
    logging_config = _file_logging_settings(config) if config else {}

    level = logging_config.get('level', 'INFO')
    # CLI option overrides config
    if log_level:
        level = log_level

    setup_logging(
        level=level,
        json_output=logging_config.get('json_format', False),
        log_file=logging_config.get('file'),
        module_levels=logging_config.get('module_levels', {})
    )

    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['state_file'] = state_file


def _build_sidecar(ctx) -> Sidecar:
    host = ActionsHost()
    config = load_config(host, ctx.obj['config_path'])
    if ctx.obj['state_file']:
        config = config.model_copy(update={'state_file': ctx.obj['state_file']})
    return Sidecar(host, config)


@cli.command()
@click.pass_context
def setup(ctx):
    """Launch the telemetry sidecar and agents (main step)."""
    try:
        _build_sidecar(ctx).setup()
    except Exception as e:
        logger.error(f"Setup failed: {e}", exc_info=logger.isEnabledFor(logging.DEBUG))
        sys.exit(1)


@cli.command()
@click.pass_context
def teardown(ctx):
    """Stop everything, upload signals and write the job summary (post step)."""
    try:
        _build_sidecar(ctx).teardown()
    except Exception as e:
        logger.error(f"Teardown failed: {e}", exc_info=logger.isEnabledFor(logging.DEBUG))
        sys.exit(1)


@cli.command()
@click.argument('signals_path', type=click.Path())
def macros(signals_path):
    """Print the query macro library for a signals directory."""
    click.echo(render_macros(signals_path))


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
