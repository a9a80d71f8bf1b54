"""
Configuration Management Commands for the tapforge CLI
"""

from typing import Optional

import click

from ..context import CLIContext, handle_cli_error, pass_context


@click.group()
@pass_context
def config(ctx: CLIContext):
    """
    Configuration management commands.
    """
    ctx.logger.debug("Config command group invoked")


@config.command('show')
@click.option('--key', help='Specific configuration key to show (dot notation)')
@click.option('--sources', is_flag=True, help='Show configuration sources')
@pass_context
@handle_cli_error
def show_config(ctx: CLIContext, key: Optional[str], sources: bool):
    """
    Show the merged configuration.

    Examples:
        tapforge config show
        tapforge config show --key fees.fee_rate
        tapforge -o yaml config show --sources
    """
    ctx.load_config()
    manager = ctx.config_manager

    if key:
        value = manager.get(key)
        if value is None:
            raise click.ClickException(f"Configuration key not found: {key}")
        ctx.output({key: value})
        return

    data = dict(manager.load())
    if sources:
        data['sources'] = manager.get_sources()
    ctx.output(data)


@config.command('validate')
@pass_context
@handle_cli_error
def validate_config(ctx: CLIContext):
    """
    Validate the merged configuration; exits with status 1 on errors.
    """
    ctx.load_config()
    errors = ctx.config_manager.validate()
    if errors:
        for error in errors:
            click.echo(f"  - {error}", err=True)
        raise click.ClickException(f"Configuration has {len(errors)} error(s)")
    ctx.output({'valid': True, 'sources': ctx.config_manager.get_sources()})
