"""
tapforge - Bitcoin Core RPC Client

JSON-RPC client implementing ``UTXOProvider`` (``scantxoutset``) and
``Broadcaster`` (``sendrawtransaction``). Transport failures surface as
``RPCError`` subclasses; nothing above the HTTP session retries.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import requests
from requests.adapters import HTTPAdapter
from requests.auth import HTTPBasicAuth
from urllib3.util.retry import Retry

from psbt.utxo import UTXO
from .providers import Broadcaster, BroadcastResult, UTXOConstraints, UTXOProvider

SATOSHIS_PER_BTC = 100_000_000


class RPCError(Exception):
    """Base exception for RPC-related errors."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC Error {code}: {message}")


class RPCConnectionError(RPCError):
    """Exception for RPC connection failures."""
    pass


class RPCAuthError(RPCError):
    """Exception for RPC authentication failures."""
    pass


class RPCTimeoutError(RPCError):
    """Exception for RPC timeout errors."""
    pass


DEFAULT_PORTS = {
    'bitcoin': 8332,
    'testnet': 18332,
    'signet': 38332,
    'regtest': 18443,
}

COOKIE_DIRS = {
    'bitcoin': '',
    'testnet': 'testnet3',
    'signet': 'signet',
    'regtest': 'regtest',
}


@dataclass
class RPCConfig:
    """Configuration for Bitcoin Core RPC connection."""
    host: str = "localhost"
    port: int = 18443
    username: Optional[str] = None
    password: Optional[str] = None
    cookie_file: Optional[str] = None
    timeout: int = 30
    max_retries: int = 0
    backoff_factor: float = 1.0
    use_ssl: bool = False
    network: str = 'regtest'

    def __post_init__(self):
        if not self.username and not self.cookie_file:
            self.cookie_file = self._find_cookie_file()

        if not self.username and not self.cookie_file:
            raise ValueError("Either username/password or cookie file must be provided")

    def _find_cookie_file(self) -> Optional[str]:
        """Look for the Bitcoin Core cookie of the configured network."""
        subdir = COOKIE_DIRS.get(self.network, self.network)
        path = Path("~/.bitcoin").expanduser() / subdir / ".cookie"
        return str(path) if path.exists() else None

    @classmethod
    def from_env(cls) -> 'RPCConfig':
        """Create RPC config from environment variables."""
        network = os.getenv("BITCOIN_RPC_NETWORK", "regtest")
        return cls(
            host=os.getenv("BITCOIN_RPC_HOST", "localhost"),
            port=int(os.getenv("BITCOIN_RPC_PORT", str(DEFAULT_PORTS.get(network, 18443)))),
            username=os.getenv("BITCOIN_RPC_USER"),
            password=os.getenv("BITCOIN_RPC_PASSWORD"),
            cookie_file=os.getenv("BITCOIN_RPC_COOKIE_FILE"),
            timeout=int(os.getenv("BITCOIN_RPC_TIMEOUT", "30")),
            network=network,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any], network: str = 'regtest') -> 'RPCConfig':
        """Build from the ``network.bitcoin_rpc`` configuration section."""
        return cls(
            host=data.get('host', 'localhost'),
            port=int(data.get('port') or DEFAULT_PORTS.get(network, 18443)),
            username=data.get('username') or None,
            password=data.get('password') or None,
            cookie_file=data.get('cookie_file') or None,
            timeout=int(data.get('timeout', 30)),
            max_retries=int(data.get('max_retries', 0)),
            network=network,
        )

    @property
    def url(self) -> str:
        protocol = "https" if self.use_ssl else "http"
        return f"{protocol}://{self.host}:{self.port}/"


class BitcoinRPCClient(UTXOProvider, Broadcaster):
    """
    Bitcoin Core RPC client.

    Args:
        config: RPC configuration (uses environment if None)
        session: Optional pre-configured requests session
    """

    def __init__(self, config: Optional[RPCConfig] = None,
                 session: Optional[requests.Session] = None):
        self.config = config or RPCConfig.from_env()
        self.logger = logging.getLogger(__name__)
        self.session = session or self._create_session()
        self._request_id = 0

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        if self.config.max_retries:
            retry_strategy = Retry(
                total=self.config.max_retries,
                backoff_factor=self.config.backoff_factor,
                status_forcelist=[429, 502, 503, 504],
                allowed_methods=["POST"],
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        session.auth = self._auth()
        return session

    def _auth(self) -> HTTPBasicAuth:
        if self.config.username and self.config.password:
            self.logger.debug("Using basic authentication")
            return HTTPBasicAuth(self.config.username, self.config.password)

        try:
            with open(self.config.cookie_file, 'r') as f:
                cookie_content = f.read().strip()
        except OSError as e:
            raise RPCAuthError(-1, f"Failed to read cookie file {self.config.cookie_file}: {e}")

        if ':' not in cookie_content:
            raise RPCAuthError(-1, f"Invalid cookie file format: {self.config.cookie_file}")
        username, password = cookie_content.split(':', 1)
        self.logger.debug(f"Using cookie file authentication: {self.config.cookie_file}")
        return HTTPBasicAuth(username, password)

    def call(self, method: str, *params) -> Any:
        """
        Make an RPC call and return the result.

        Raises:
            RPCError: If the node returns an error
            RPCAuthError: On HTTP 401
            RPCTimeoutError: If the request times out
            RPCConnectionError: If the node is unreachable or answers non-200
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "1.0",
            "method": method,
            "params": list(params),
            "id": f"tapforge-{self._request_id}",
        }
        start_time = time.time()

        try:
            response = self.session.post(
                self.config.url,
                data=json.dumps(payload),
                headers={"Content-Type": "application/json"},
                timeout=self.config.timeout,
            )
        except requests.exceptions.Timeout:
            raise RPCTimeoutError(-1, f"Request timed out after {self.config.timeout}s")
        except requests.exceptions.ConnectionError as e:
            raise RPCConnectionError(-1, f"Connection error: {e}")
        except requests.exceptions.RequestException as e:
            raise RPCError(-1, f"Request failed: {e}")

        if response.status_code == 401:
            raise RPCAuthError(response.status_code, "Authentication failed")

        # Bitcoin Core reports RPC errors with HTTP 404/500 and a JSON body
        try:
            response_data = response.json()
        except ValueError as e:
            if response.status_code != 200:
                raise RPCConnectionError(response.status_code, f"HTTP {response.status_code}: {response.reason}")
            raise RPCError(-32700, f"Invalid JSON response: {e}")

        error = response_data.get("error")
        if error:
            raise RPCError(error.get("code", -1), error.get("message", ""), error.get("data"))

        self.logger.debug(f"RPC {method} answered in {time.time() - start_time:.3f}s")
        return response_data.get("result")

    def fetch(self, address: str, constraints: Optional[UTXOConstraints] = None) -> List[UTXO]:
        """Scan the UTXO set for outputs paying address."""
        result = self.call("scantxoutset", "start", [f"addr({address})"])
        utxos = [
            UTXO(
                transaction_id=entry["txid"],
                output_index=int(entry["vout"]),
                value=btc_to_sat(entry["amount"]),
                script_pubkey=bytes.fromhex(entry["scriptPubKey"]),
            )
            for entry in (result or {}).get("unspents", [])
        ]
        self.logger.info(f"Found {len(utxos)} UTXOs for {address}")
        return constraints.apply(utxos) if constraints else utxos

    def get_raw_transaction(self, txid: str) -> bytes:
        """Previous transaction bytes, needed to spend legacy outputs."""
        return bytes.fromhex(self.call("getrawtransaction", txid))

    def send(self, raw_hex: str) -> BroadcastResult:
        """Submit a transaction. Node rejections are reported, not raised."""
        try:
            txid = self.call("sendrawtransaction", raw_hex)
        except (RPCConnectionError, RPCAuthError, RPCTimeoutError):
            raise
        except RPCError as e:
            self.logger.error(f"Broadcast rejected: {e.message}")
            return BroadcastResult(success=False, error=e.message)

        self.logger.info(f"Broadcast transaction {txid}")
        return BroadcastResult(success=True, txid=txid)

    def close(self):
        self.session.close()


def btc_to_sat(amount: Union[int, float, str]) -> int:
    """Convert a BTC amount as returned by the node into satoshis."""
    return int((Decimal(str(amount)) * SATOSHIS_PER_BTC).to_integral_value())
