"""
Tests for the tapforge command line interface.
"""

import json
import logging

import pytest
import yaml
from click.testing import CliRunner

from cli.main import cli
from psbt.multisig import MultiSignTransaction
from psbt.tweaked import TweakedTransaction
from psbt.utxo import UTXO
from scripts.address import script_to_address

NETWORK = 'regtest'


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'tapforge.yml'
    path.write_text(yaml.safe_dump({'network': {'type': NETWORK}}))
    return str(path)


@pytest.fixture
def vault_file(tmp_path, vault):
    path = tmp_path / 'vault.yml'
    path.write_text(yaml.safe_dump(vault.to_dict()))
    return str(path)


@pytest.fixture
def invoke(runner, config_file):
    def _invoke(*args):
        return runner.invoke(cli, ['-c', config_file, '-o', 'json', *args])
    return _invoke


def private_key_hex(n: int) -> str:
    return f'{n:02x}' * 32


class TestVaultCommands:
    """Test the co-signing flow through the CLI."""

    @pytest.fixture
    def psbt_b64(self, vault, wallet):
        receiver = script_to_address(TweakedTransaction.key_path_script(wallet), NETWORK)
        session = MultiSignTransaction(
            vault, [UTXO('cc' * 32, 0, 500_000, vault.script_pubkey)], receiver, 100_000,
            vault.address(NETWORK), fee_rate=2, network=NETWORK,
        )
        session.build_psbt()
        return session.to_base64()

    def test_address(self, invoke, vault, vault_signers):
        keys = [signer.public_key.hex() for signer in vault_signers]
        result = invoke('vault', 'address', *keys, '-m', '2')

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data['address'] == vault.address(NETWORK)
        assert data['public_keys'] == [key.hex() for key in vault.public_keys]
        assert data['script'].endswith('OP_2 OP_NUMEQUAL')

    def test_address_invalid_threshold(self, invoke, vault_signers):
        keys = [signer.public_key.hex() for signer in vault_signers]
        result = invoke('vault', 'address', *keys, '-m', '4')
        assert result.exit_code == 1
        assert 'Error:' in result.output

    def test_sign_and_finalize(self, invoke, psbt_b64, vault_file):
        # vault_signers are keys 2, 3 and 4
        first = invoke('vault', 'sign', psbt_b64, '--vault', vault_file, '--key', private_key_hex(2))
        assert first.exit_code == 0, first.output
        first_data = json.loads(first.stdout)
        assert first_data['signed'] is True
        assert first_data['finalizable'] is False

        second = invoke('vault', 'sign', first_data['psbt'], '--vault', vault_file, '--key', private_key_hex(3))
        second_data = json.loads(second.stdout)
        assert second_data['finalizable'] is True

        final = invoke('vault', 'finalize', second_data['psbt'], '--vault', vault_file)
        assert final.exit_code == 0, final.output
        final_data = json.loads(final.stdout)
        assert final_data['complete'] is True
        assert 'raw_transaction' in final_data

    def test_combine(self, invoke, psbt_b64, vault_file):
        a = json.loads(invoke('vault', 'sign', psbt_b64, '--vault', vault_file,
                              '--key', private_key_hex(2)).stdout)
        c = json.loads(invoke('vault', 'sign', psbt_b64, '--vault', vault_file,
                              '--key', private_key_hex(4)).stdout)

        merged = invoke('vault', 'combine', a['psbt'], c['psbt'])
        assert merged.exit_code == 0, merged.output

        final = json.loads(invoke('vault', 'finalize', json.loads(merged.stdout)['psbt'],
                                  '--vault', vault_file).stdout)
        assert final['complete'] is True

    def test_outsider_key(self, invoke, psbt_b64, vault_file):
        result = invoke('vault', 'sign', psbt_b64, '--vault', vault_file, '--key', private_key_hex(9))
        assert result.exit_code == 1

    def test_bad_psbt(self, invoke, vault_file):
        result = invoke('vault', 'finalize', 'bm90IGEgcHNidA==', '--vault', vault_file)
        assert result.exit_code == 1


class TestEnvelopeCommand:

    def test_compile(self, invoke, wallet, challenge, random_bytes):
        args = [
            'envelope', 'compile',
            '--sender-key', wallet.public_key.hex(),
            '--calldata', 'deadbeef',
            '--contract-secret', '42' * 32,
            '--challenge-key', challenge.public_key.hex(),
            '--challenge-solution', challenge.solution.hex(),
            '--priority-fee', '1000',
            '--random-bytes', random_bytes.hex(),
        ]
        first = invoke(*args)
        assert first.exit_code == 0, first.output
        data = json.loads(first.stdout)
        assert data['address'].startswith('bcrt1p')
        assert 'OP_CHECKSIGVERIFY' in data['asm']

        assert json.loads(invoke(*args).stdout)['address'] == data['address']

    def test_bad_hex(self, invoke, wallet, challenge):
        result = invoke(
            'envelope', 'compile', '--sender-key', wallet.public_key.hex(), '--calldata', 'zz',
            '--contract-secret', '42' * 32, '--challenge-key', challenge.public_key.hex(),
            '--challenge-solution', challenge.solution.hex(),
        )
        assert result.exit_code == 2


class TestConfigCommands:

    def test_validate(self, invoke):
        result = invoke('config', 'validate')
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)['valid'] is True

    def test_validate_errors(self, runner, tmp_path):
        path = tmp_path / 'bad.yml'
        path.write_text(yaml.safe_dump({'fees': {'fee_rate': -1}}))
        result = runner.invoke(cli, ['-c', str(path), 'config', 'validate'])
        assert result.exit_code == 1
        assert 'Fee rate' in result.output

    def test_show_key(self, invoke):
        result = invoke('config', 'show', '--key', 'network.type')
        assert json.loads(result.stdout) == {'network.type': NETWORK}

    def test_show_missing_key(self, invoke):
        result = invoke('config', 'show', '--key', 'no.such.key')
        assert result.exit_code == 1
