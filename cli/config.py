"""
Configuration Management Module for the tapforge CLI

Hierarchical configuration: defaults, then an optional profile, then the
first configuration file found, then ``TAPFORGE_*`` environment variables.
Later sources override earlier ones key by key.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from psbt.consensus import ConsensusConfig
from psbt.exceptions import ConstructionError
from scripts.address import NETWORKS

# Configuration file locations in order of precedence (highest to lowest)
CONFIG_SEARCH_PATHS = [
    Path('.tapforge.yml'),
    Path('.tapforge.json'),
    Path('tapforge.config.yml'),
    Path('tapforge.config.json'),
    Path('~/.tapforge/config.yml'),
    Path('~/.tapforge/config.json'),
    Path('/etc/tapforge/config.yml'),
]

# TAPFORGE_FEES__FEE_RATE=2.5 -> {'fees': {'fee_rate': 2.5}}
ENV_PREFIX = 'TAPFORGE_'
ENV_SEPARATOR = '__'

OUTPUT_FORMATS = ['table', 'json', 'yaml']

DEFAULT_CONFIG = {
    'network': {
        'type': 'regtest',
        'bitcoin_rpc': {
            'host': 'localhost',
            'port': 18443,
            'username': None,
            'password': None,
            'cookie_file': None,
            'timeout': 30,
        },
    },
    'fees': {
        'fee_rate': 1.0,
        'priority_fee': 0,
        'gas_sat_fee': 0,
    },
    'consensus': {},
    'cli': {
        'output_format': 'table',
        'verbose': 0,
    },
}

PROFILES = {
    'mainnet': {
        'network': {'type': 'bitcoin', 'bitcoin_rpc': {'port': 8332}},
    },
    'testnet': {
        'network': {'type': 'testnet', 'bitcoin_rpc': {'port': 18332}},
    },
    'signet': {
        'network': {'type': 'signet', 'bitcoin_rpc': {'port': 38332}},
    },
    'development': {
        'network': {'type': 'regtest'},
        'cli': {'verbose': 2},
    },
}


class ConfigurationError(Exception):
    """Raised when a configuration file cannot be read."""
    pass


class ConfigurationManager:
    """Manages hierarchical configuration with environment variable support."""

    def __init__(self, config_file: Optional[str] = None, profile: Optional[str] = None,
                 environ: Optional[Dict[str, str]] = None):
        """
        Args:
            config_file: Explicit configuration file path
            profile: Configuration profile to apply over the defaults
            environ: Environment to read, os.environ when None
        """
        self.logger = logging.getLogger(__name__)
        self.config_file = config_file
        self.profile = profile
        self.environ = os.environ if environ is None else environ
        self._config_cache: Optional[Dict[str, Any]] = None
        self._config_sources: List[str] = []

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from all sources in hierarchical order.

        Returns:
            Merged configuration dictionary
        """
        if self._config_cache is not None:
            return self._config_cache

        configs = [copy.deepcopy(DEFAULT_CONFIG)]
        self._config_sources = ["defaults"]

        if self.profile:
            if self.profile not in PROFILES:
                raise ConfigurationError(f"Unknown profile: {self.profile}")
            configs.append(PROFILES[self.profile])
            self._config_sources.append(f"profile:{self.profile}")

        if self.config_file:
            configs.append(self._load_config_file(Path(self.config_file)))
            self._config_sources.append(f"file:{self.config_file}")
        else:
            for config_path in CONFIG_SEARCH_PATHS:
                config_path = config_path.expanduser()
                if config_path.exists():
                    configs.append(self._load_config_file(config_path))
                    self._config_sources.append(f"file:{config_path}")
                    self.logger.debug(f"Loaded config from {config_path}")
                    break

        env_config = self._load_environment_variables()
        if env_config:
            configs.append(env_config)
            self._config_sources.append("environment")

        self._config_cache = self._deep_merge(*configs)
        return self._config_cache

    def _load_config_file(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path, 'r') as f:
                if path.suffix in ('.yml', '.yaml'):
                    data = yaml.safe_load(f)
                elif path.suffix == '.json':
                    data = json.load(f)
                else:
                    raise ConfigurationError(f"Unknown config file format: {path}")
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to load config from {path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        return data

    def _load_environment_variables(self) -> Dict[str, Any]:
        env_config: Dict[str, Any] = {}

        for key, value in self.environ.items():
            if not key.startswith(ENV_PREFIX):
                continue
            parts = key[len(ENV_PREFIX):].lower().split(ENV_SEPARATOR)
            current = env_config
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = self._parse_env_value(value)

        return env_config

    @staticmethod
    def _parse_env_value(value: str) -> Union[str, int, float, bool, None, list, dict]:
        """YAML scalar rules: numbers, booleans and null are typed, the rest stays a string."""
        try:
            return yaml.safe_load(value)
        except yaml.YAMLError:
            return value

    def _deep_merge(self, *dicts: Dict[str, Any]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}

        for dictionary in dicts:
            for key, value in dictionary.items():
                if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = self._deep_merge(result[key], value)
                else:
                    result[key] = copy.deepcopy(value)

        return result

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation path.

        Args:
            key_path: Dot-separated path (e.g., 'network.bitcoin_rpc.host')
            default: Default value if key not found
        """
        current = self.load()
        for key in key_path.split('.'):
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current

    def set(self, key_path: str, value: Any):
        config = self.load()
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            current = current.setdefault(key, {})
        current[keys[-1]] = value

    def save(self, path: Optional[str] = None, format: str = 'yaml'):
        """Save the merged configuration to path (default: project config file)."""
        config = self.load()
        target = Path(path) if path else Path('.tapforge.yml' if format == 'yaml' else '.tapforge.json')
        target.parent.mkdir(parents=True, exist_ok=True)

        with open(target, 'w') as f:
            if format == 'yaml':
                yaml.safe_dump(config, f, default_flow_style=False, sort_keys=False)
            else:
                json.dump(config, f, indent=2)

        self.logger.info(f"Configuration saved to {target}")

    def consensus(self) -> ConsensusConfig:
        return ConsensusConfig.from_dict(self.get('consensus') or {})

    def validate(self) -> List[str]:
        """
        Validate current configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        config = self.load()
        errors = []

        network_type = config.get('network', {}).get('type')
        if network_type not in NETWORKS:
            errors.append(f"Invalid network type: {network_type}")

        rpc_config = config.get('network', {}).get('bitcoin_rpc', {})
        if not rpc_config.get('host'):
            errors.append("Bitcoin RPC host is required")
        port = rpc_config.get('port')
        if not isinstance(port, int) or port <= 0:
            errors.append("Bitcoin RPC port must be a positive integer")

        fees = config.get('fees', {})
        fee_rate = fees.get('fee_rate')
        if not isinstance(fee_rate, (int, float)) or fee_rate <= 0:
            errors.append(f"Fee rate must be a positive number, got {fee_rate}")
        for name in ('priority_fee', 'gas_sat_fee'):
            value = fees.get(name, 0)
            if not isinstance(value, int) or value < 0:
                errors.append(f"{name} must be a non-negative integer, got {value}")

        try:
            self.consensus()
        except (ConstructionError, TypeError, ValueError) as e:
            errors.append(f"Invalid consensus section: {e}")

        output_format = config.get('cli', {}).get('output_format')
        if output_format not in OUTPUT_FORMATS:
            errors.append(f"Invalid output format: {output_format}")

        return errors

    def get_sources(self) -> List[str]:
        self.load()
        return self._config_sources

    def reset(self):
        self._config_cache = None
        self._config_sources = []
