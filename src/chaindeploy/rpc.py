"""Minimal JSON-RPC client for Ethereum-compatible nodes."""

import itertools
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from .constants import RPC_MAX_RETRIES, RPC_TIMEOUT
from .exceptions import RpcError, RpcTransportError
from .polling import Backoff

logger = logging.getLogger(__name__)

# HTTP statuses worth retrying: rate limiting and gateway trouble
_TRANSIENT_STATUSES = {429, 502, 503, 504}


class RpcClient:
    """Talks JSON-RPC 2.0 over HTTP to a single endpoint."""

    def __init__(
        self,
        url: str,
        timeout: float = RPC_TIMEOUT,
        retries: int = RPC_MAX_RETRIES,
        backoff: Backoff = Backoff(initial=0.5, factor=2.0, cap=4.0),
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self._session = session or requests.Session()
        self._ids = itertools.count(1)

    def request(self, method: str, params: List[Any], retry: bool = True) -> Any:
        """
        Send one JSON-RPC request.

        Args:
            method: RPC method name
            params: Positional parameters
            retry: Retry transport failures (never set for state-changing calls)

        Returns:
            The ``result`` member of the response

        Raises:
            RpcError: If the node answers with an error object
            RpcTransportError: If the node is unreachable or the reply is not JSON-RPC
        """
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": next(self._ids)}
        attempts = 1 + (self.retries if retry else 0)
        delays = self.backoff.delays()

        for attempt in range(1, attempts + 1):
            try:
                response = self._session.post(self.url, json=payload, timeout=self.timeout)
            except requests.RequestException as e:
                if attempt < attempts:
                    self._pause(method, attempt, e, next(delays))
                    continue
                raise RpcTransportError(f"Network error during RPC call {method}: {e}") from e

            if response.status_code != 200:
                if response.status_code in _TRANSIENT_STATUSES and attempt < attempts:
                    self._pause(method, attempt, f"HTTP {response.status_code}", next(delays))
                    continue
                raise RpcTransportError(
                    f"RPC request {method} failed with status {response.status_code}"
                )

            try:
                result = response.json()
            except ValueError as e:
                raise RpcTransportError(f"RPC response to {method} is not JSON") from e

            # Check for RPC errors
            if "error" in result:
                error = result["error"] or {}
                raise RpcError(
                    f"RPC error: {error.get('message', error)}",
                    code=error.get("code"),
                    data=error.get("data"),
                )

            return result.get("result")

        # Unreachable: the last attempt either returns or raises
        raise RpcTransportError(f"RPC request {method} failed")

    @staticmethod
    def _pause(method: str, attempt: int, cause: Any, delay: float) -> None:
        logger.warning("RPC %s attempt %d failed (%s); retrying in %.1fs", method, attempt, cause, delay)
        time.sleep(delay)

    def chain_id(self) -> int:
        return int(self.request("eth_chainId", []), 16)

    def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return int(self.request("eth_getTransactionCount", [address, block]), 16)

    def gas_price(self) -> int:
        return int(self.request("eth_gasPrice", []), 16)

    def max_priority_fee(self) -> int:
        return int(self.request("eth_maxPriorityFeePerGas", []), 16)

    def get_block(self, block: str = "latest") -> Dict[str, Any]:
        return self.request("eth_getBlockByNumber", [block, False])

    def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return int(self.request("eth_estimateGas", [to_rpc_transaction(tx)]), 16)

    def call(self, tx: Dict[str, Any], block: str = "latest") -> str:
        return self.request("eth_call", [to_rpc_transaction(tx), block])

    def send_raw_transaction(self, raw: bytes) -> str:
        return self.request("eth_sendRawTransaction", ["0x" + bytes(raw).hex()], retry=False)

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.request("eth_getTransactionReceipt", [tx_hash])


def to_rpc_transaction(tx: Dict[str, Any]) -> Dict[str, Any]:
    """Convert integer quantities of a transaction dict to JSON-RPC hex strings."""
    converted: Dict[str, Any] = {}
    for key, value in tx.items():
        if value is None:
            continue
        if isinstance(value, int) and not isinstance(value, bool):
            converted[key] = hex(value)
        else:
            converted[key] = value
    return converted
