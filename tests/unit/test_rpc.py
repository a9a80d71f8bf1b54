"""
Unit tests for the Bitcoin Core RPC client, with the HTTP session mocked.
"""

import json
import os
import tempfile
import unittest
from unittest.mock import Mock

import requests

from network.providers import UTXOConstraints
from network.rpc import (
    BitcoinRPCClient,
    RPCAuthError,
    RPCConfig,
    RPCConnectionError,
    RPCError,
    RPCTimeoutError,
    btc_to_sat,
)

P2TR_HEX = '5120' + '07' * 32


def node_response(result=None, error=None, status_code=200):
    response = Mock()
    response.status_code = status_code
    response.reason = 'OK' if status_code == 200 else 'Error'
    response.json.return_value = {'result': result, 'error': error, 'id': 'tapforge-1'}
    return response


class TestRPCCall(unittest.TestCase):
    """Test the JSON-RPC round trip."""

    def setUp(self):
        self.session = Mock()
        config = RPCConfig(username='user', password='pass', port=18443)
        self.client = BitcoinRPCClient(config, session=self.session)

    def test_call_success(self):
        self.session.post.return_value = node_response(result=800_000)

        self.assertEqual(self.client.call('getblockcount'), 800_000)

        url = self.session.post.call_args[0][0]
        payload = json.loads(self.session.post.call_args[1]['data'])
        self.assertEqual(url, 'http://localhost:18443/')
        self.assertEqual(payload['method'], 'getblockcount')
        self.assertEqual(payload['params'], [])

    def test_call_error(self):
        self.session.post.return_value = node_response(
            error={'code': -5, 'message': 'No such mempool or blockchain transaction'}, status_code=500,
        )
        with self.assertRaises(RPCError) as ctx:
            self.client.call('getrawtransaction', 'ab' * 32)
        self.assertEqual(ctx.exception.code, -5)

    def test_auth_failure(self):
        self.session.post.return_value = node_response(status_code=401)
        with self.assertRaises(RPCAuthError):
            self.client.call('getblockcount')

    def test_non_json_error_page(self):
        response = node_response(status_code=503)
        response.json.side_effect = ValueError('no json')
        self.session.post.return_value = response
        with self.assertRaises(RPCConnectionError):
            self.client.call('getblockcount')

    def test_timeout(self):
        self.session.post.side_effect = requests.exceptions.Timeout()
        with self.assertRaises(RPCTimeoutError):
            self.client.call('getblockcount')

    def test_connection_error(self):
        self.session.post.side_effect = requests.exceptions.ConnectionError('refused')
        with self.assertRaises(RPCConnectionError):
            self.client.call('getblockcount')


class TestProviders(unittest.TestCase):
    """Test the provider side of the client."""

    def setUp(self):
        self.session = Mock()
        self.client = BitcoinRPCClient(RPCConfig(username='user', password='pass'), session=self.session)

    def test_fetch(self):
        self.session.post.return_value = node_response(result={'unspents': [
            {'txid': 'aa' * 32, 'vout': 1, 'amount': 0.0005, 'scriptPubKey': P2TR_HEX},
            {'txid': 'bb' * 32, 'vout': 0, 'amount': 0.01, 'scriptPubKey': P2TR_HEX},
        ]})

        utxos = self.client.fetch('bcrt1pexample')
        self.assertEqual([u.value for u in utxos], [50_000, 1_000_000])
        self.assertEqual(utxos[0].outpoint, f"{'aa' * 32}:1")

        payload = json.loads(self.session.post.call_args[1]['data'])
        self.assertEqual(payload['params'], ['start', ['addr(bcrt1pexample)']])

    def test_fetch_with_constraints(self):
        self.session.post.return_value = node_response(result={'unspents': [
            {'txid': 'aa' * 32, 'vout': 0, 'amount': 0.0001, 'scriptPubKey': P2TR_HEX},
            {'txid': 'bb' * 32, 'vout': 0, 'amount': 0.02, 'scriptPubKey': P2TR_HEX},
            {'txid': 'cc' * 32, 'vout': 0, 'amount': 0.01, 'scriptPubKey': P2TR_HEX},
        ]})

        constraints = UTXOConstraints(minimum_amount=20_000, required_amount=1_500_000)
        utxos = self.client.fetch('bcrt1pexample', constraints)
        self.assertEqual([u.value for u in utxos], [2_000_000])

    def test_send_success(self):
        self.session.post.return_value = node_response(result='ff' * 32)
        result = self.client.send('0200')
        self.assertTrue(result.success)
        self.assertEqual(result.txid, 'ff' * 32)

    def test_send_rejected(self):
        self.session.post.return_value = node_response(
            error={'code': -25, 'message': 'bad-txns-inputs-missingorspent'}, status_code=500,
        )
        result = self.client.send('0200')
        self.assertFalse(result.success)
        self.assertEqual(result.error, 'bad-txns-inputs-missingorspent')

    def test_send_transport_failure_raises(self):
        self.session.post.side_effect = requests.exceptions.ConnectionError('refused')
        with self.assertRaises(RPCConnectionError):
            self.client.send('0200')

    def test_get_raw_transaction(self):
        self.session.post.return_value = node_response(result='0200abcd')
        self.assertEqual(self.client.get_raw_transaction('ab' * 32), bytes.fromhex('0200abcd'))


class TestRPCConfig(unittest.TestCase):

    def test_from_dict(self):
        config = RPCConfig.from_dict({'host': 'node', 'username': 'u', 'password': 'p'}, network='testnet')
        self.assertEqual(config.url, 'http://node:18332/')
        self.assertEqual(config.max_retries, 0)

    def test_requires_credentials(self):
        with self.assertRaises(ValueError):
            RPCConfig(cookie_file=None, network='no-such-network')

    def test_cookie_auth(self):
        with tempfile.NamedTemporaryFile('w', suffix='.cookie', delete=False) as f:
            f.write('__cookie__:secret\n')
        self.addCleanup(os.unlink, f.name)
        client = BitcoinRPCClient(RPCConfig(cookie_file=f.name))
        self.assertEqual(client.session.auth.username, '__cookie__')
        self.assertEqual(client.session.auth.password, 'secret')
        client.close()

    def test_bad_cookie(self):
        with self.assertRaises(RPCAuthError):
            BitcoinRPCClient(RPCConfig(cookie_file='/nonexistent/.cookie'))


class TestConversions(unittest.TestCase):

    def test_btc_to_sat(self):
        self.assertEqual(btc_to_sat(0.1), 10_000_000)
        self.assertEqual(btc_to_sat('0.00000001'), 1)
        self.assertEqual(btc_to_sat(21), 2_100_000_000)


if __name__ == '__main__':
    unittest.main()
