"""
Tests for the layered configuration manager.
"""

import json

import pytest
import yaml

from cli.config import ConfigurationError, ConfigurationManager


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / 'tapforge.yml'
    path.write_text(yaml.safe_dump({
        'network': {'bitcoin_rpc': {'host': 'node.local', 'username': 'alice'}},
        'fees': {'fee_rate': 3.5},
    }))
    return path


class TestLoading:
    """Test source precedence."""

    def test_file_over_defaults(self, config_path):
        manager = ConfigurationManager(str(config_path), environ={})
        assert manager.get('network.bitcoin_rpc.host') == 'node.local'
        assert manager.get('network.bitcoin_rpc.port') == 18443
        assert manager.get('fees.fee_rate') == 3.5
        assert manager.get('fees.priority_fee') == 0

    def test_environment_over_file(self, config_path):
        environ = {
            'TAPFORGE_FEES__PRIORITY_FEE': '500',
            'TAPFORGE_FEES__FEE_RATE': '1.25',
            'TAPFORGE_NETWORK__TYPE': 'testnet',
            'UNRELATED': 'x',
        }
        manager = ConfigurationManager(str(config_path), environ=environ)
        assert manager.get('fees.priority_fee') == 500
        assert manager.get('fees.fee_rate') == 1.25
        assert manager.get('network.type') == 'testnet'
        assert manager.get('network.bitcoin_rpc.host') == 'node.local'
        assert manager.get_sources() == ['defaults', f'file:{config_path}', 'environment']

    def test_profile(self, config_path):
        manager = ConfigurationManager(str(config_path), profile='mainnet', environ={})
        assert manager.get('network.type') == 'bitcoin'
        assert manager.get('network.bitcoin_rpc.port') == 8332
        assert manager.get('network.bitcoin_rpc.host') == 'node.local'

    def test_unknown_profile(self, config_path):
        with pytest.raises(ConfigurationError):
            ConfigurationManager(str(config_path), profile='moonnet', environ={}).load()

    def test_json_file(self, tmp_path):
        path = tmp_path / 'tapforge.json'
        path.write_text(json.dumps({'cli': {'output_format': 'json'}}))
        assert ConfigurationManager(str(path), environ={}).get('cli.output_format') == 'json'

    def test_empty_file(self, tmp_path):
        path = tmp_path / 'empty.yml'
        path.write_text('')
        assert ConfigurationManager(str(path), environ={}).get('network.type') == 'regtest'

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / 'list.yml'
        path.write_text('- a\n- b\n')
        with pytest.raises(ConfigurationError):
            ConfigurationManager(str(path), environ={}).load()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigurationManager(str(tmp_path / 'absent.yml'), environ={}).load()

    def test_unknown_format(self, tmp_path):
        path = tmp_path / 'config.toml'
        path.write_text('a = 1')
        with pytest.raises(ConfigurationError):
            ConfigurationManager(str(path), environ={}).load()

    def test_get_default(self, config_path):
        manager = ConfigurationManager(str(config_path), environ={})
        assert manager.get('fees.missing', 7) == 7
        assert manager.get('fees.fee_rate.deeper') is None


class TestValidation:
    """Test configuration validation."""

    def test_defaults_are_valid(self, config_path):
        assert ConfigurationManager(str(config_path), environ={}).validate() == []

    def test_reports_every_error(self, config_path):
        environ = {
            'TAPFORGE_NETWORK__TYPE': 'litecoin',
            'TAPFORGE_FEES__FEE_RATE': '0',
            'TAPFORGE_FEES__PRIORITY_FEE': '-1',
            'TAPFORGE_CLI__OUTPUT_FORMAT': 'xml',
        }
        errors = ConfigurationManager(str(config_path), environ=environ).validate()
        assert len(errors) == 4
        assert any('litecoin' in error for error in errors)

    def test_bad_consensus(self, config_path):
        environ = {'TAPFORGE_CONSENSUS__CHUNK_SIZE': '600'}
        errors = ConfigurationManager(str(config_path), environ=environ).validate()
        assert len(errors) == 1
        assert 'consensus' in errors[0]

    def test_consensus_override(self, config_path):
        environ = {'TAPFORGE_CONSENSUS__MINIMUM_DUST': '546'}
        consensus = ConfigurationManager(str(config_path), environ=environ).consensus()
        assert consensus.minimum_dust == 546
        assert consensus.vault_minimum_amount == 200_000


class TestPersistence:

    def test_save_and_reload(self, config_path, tmp_path):
        manager = ConfigurationManager(str(config_path), environ={})
        manager.set('fees.gas_sat_fee', 250)
        target = tmp_path / 'saved' / 'config.yml'
        manager.save(str(target))

        reloaded = ConfigurationManager(str(target), environ={})
        assert reloaded.get('fees.gas_sat_fee') == 250
        assert reloaded.get('network.bitcoin_rpc.host') == 'node.local'

    def test_reset_rereads(self, config_path):
        manager = ConfigurationManager(str(config_path), environ={})
        assert manager.get('fees.fee_rate') == 3.5
        config_path.write_text(yaml.safe_dump({'fees': {'fee_rate': 9}}))
        assert manager.get('fees.fee_rate') == 3.5
        manager.reset()
        assert manager.get('fees.fee_rate') == 9
