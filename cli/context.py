"""
Shared CLI context: logging setup, configuration access, output formatting
and error handling used by every command module.
"""

import functools
import json
import logging
import sys
import traceback
from typing import Any, Optional

import click
import yaml

from crypto.exceptions import CryptoError
from network.rpc import RPCError
from psbt.consensus import ConsensusConfig
from psbt.exceptions import TransactionError
from .config import ConfigurationError, ConfigurationManager


class CLIContext:
    """Global CLI context for sharing state across commands."""

    def __init__(self):
        self.config_file: Optional[str] = None
        self.profile: Optional[str] = None
        self.output_format: str = "table"
        self.verbose: int = 0
        self.config_manager: Optional[ConfigurationManager] = None
        self.logger = logging.getLogger('tapforge-cli')

    def setup_logging(self):
        """Configure logging based on verbosity level."""
        log_levels = {
            0: logging.WARNING,
            1: logging.INFO,
            2: logging.DEBUG
        }
        level = log_levels.get(min(self.verbose, 2), logging.DEBUG)

        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(formatter)

        root = logging.getLogger()
        root.handlers = [handler]
        root.setLevel(level)

        if self.verbose < 2:
            logging.getLogger('requests').setLevel(logging.WARNING)
            logging.getLogger('urllib3').setLevel(logging.WARNING)

    def load_config(self):
        self.config_manager = ConfigurationManager(self.config_file, self.profile)
        self.config_manager.load()
        self.logger.debug(f"Configuration sources: {self.config_manager.get_sources()}")

    def get_config(self, key: str, default: Any = None) -> Any:
        if self.config_manager is None:
            self.load_config()
        return self.config_manager.get(key, default)

    @property
    def network(self) -> str:
        return self.get_config('network.type', 'regtest')

    @property
    def consensus(self) -> ConsensusConfig:
        return ConsensusConfig.from_dict(self.get_config('consensus', {}))

    def output(self, data: Any, format_override: Optional[str] = None):
        """Output data in the selected format."""
        format_type = format_override or self.output_format

        if format_type == "json":
            click.echo(json.dumps(data, indent=2, default=str))
        elif format_type == "yaml":
            click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
        else:
            self._output_table(data)

    def _output_table(self, data: Any):
        if isinstance(data, dict):
            for key, value in data.items():
                if isinstance(value, list):
                    click.echo(f"{key:20}")
                    for item in value:
                        click.echo(f"{'':20} {item}")
                else:
                    click.echo(f"{key:20} {value}")
        elif isinstance(data, list):
            for item in data:
                click.echo(item)
        else:
            click.echo(str(data))


pass_context = click.make_pass_decorator(CLIContext, ensure=True)

HANDLED_ERRORS = (TransactionError, CryptoError, RPCError, ConfigurationError, ValueError)


def handle_cli_error(func):
    """Turn library errors into a one-line message and exit status 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except KeyboardInterrupt:
            click.echo("\nOperation cancelled by user.", err=True)
            sys.exit(130)
        except HANDLED_ERRORS as e:
            ctx = click.get_current_context().find_object(CLIContext)
            click.echo(f"Error: {e}", err=True)
            if ctx and ctx.verbose >= 2:
                click.echo(traceback.format_exc(), err=True)
            else:
                click.echo("Use -vv for detailed error information.", err=True)
            sys.exit(1)

    return wrapper


def load_structured_file(path: str) -> Any:
    """Read a YAML or JSON file (JSON is parsed as YAML)."""
    try:
        with open(path, 'r') as f:
            return yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise click.FileError(path, hint=str(e))
