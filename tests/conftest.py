"""
Pytest configuration and fixtures for tapforge tests.
"""

import pytest

from crypto.keys import PrivateKey
from crypto.signer import KeyPairSigner
from psbt.consensus import ConsensusConfig
from psbt.multisig import VaultParameters
from psbt.tweaked import TweakedTransaction
from psbt.utxo import UTXO
from scripts.address import script_to_address
from scripts.challenge import ChallengeSolution
from scripts.taproot import key_path_script_pubkey


def make_signer(n: int) -> KeyPairSigner:
    """Deterministic signer whose private key is n repeated 32 times."""
    return KeyPairSigner(PrivateKey(bytes([n]) * 32))


def wallet_utxo(signer: KeyPairSigner, value: int, index: int = 0, txid_byte: int = 0xaa) -> UTXO:
    """Key-path P2TR output owned by signer."""
    return UTXO(
        transaction_id=bytes([txid_byte]).hex() * 32,
        output_index=index,
        value=value,
        script_pubkey=TweakedTransaction.key_path_script(signer),
    )


@pytest.fixture
def wallet():
    return make_signer(1)


@pytest.fixture
def other_wallet():
    return make_signer(9)


@pytest.fixture
def vault_signers():
    """Three co-signers A, B, C."""
    return [make_signer(2), make_signer(3), make_signer(4)]


@pytest.fixture
def vault(vault_signers):
    """2-of-3 vault over the vault_signers."""
    return VaultParameters(tuple(s.public_key for s in vault_signers), 2)


@pytest.fixture
def challenge():
    return ChallengeSolution(public_key=make_signer(7).public_key, solution=b'\x11' * 32)


@pytest.fixture
def consensus():
    return ConsensusConfig()


@pytest.fixture
def contract_address():
    """Regtest P2TR address standing in for a contract."""
    return script_to_address(key_path_script_pubkey(make_signer(5).x_only_public_key), 'regtest')


@pytest.fixture
def random_bytes():
    return bytes(range(32))


@pytest.fixture
def signer_factory():
    return make_signer


@pytest.fixture
def utxo_factory():
    return wallet_utxo
