"""Transaction construction, signing, submission and receipt polling."""

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence, Set

import requests
from eth_account import Account
from eth_utils import is_address, to_checksum_address

from .abi import decode_outputs, decode_revert_reason, encode_call, encode_deployment
from .constants import DEFAULT_RECEIPT_TIMEOUT, GAS_LIMIT_MULTIPLIER
from .exceptions import (
    BroadcastError,
    BroadcastErrorKind,
    ConfigError,
    ConfigErrorKind,
    EncodingError,
    RpcError,
    RpcTransportError,
    SimulationError,
)
from .nonces import NonceManager
from .polling import Backoff, CancelToken, PollCancelledError, PollTimeoutError, poll_until
from .rpc import RpcClient
from .types import (
    CallResult,
    DeploymentRequest,
    GasEstimate,
    NetworkConfig,
    TransactionReceipt,
    TxStatus,
)

logger = logging.getLogger(__name__)

_READ_ONLY = ("view", "pure")


class Broadcaster:
    """
    Sends deployments and contract calls to a network.

    Every transaction is simulated first (via gas estimation), signed locally
    and submitted exactly once. Submissions are never retried: sending a new
    signed transaction is always the caller's decision.
    """

    def __init__(
        self,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        backoff: Backoff = Backoff(),
        gas_multiplier: float = GAS_LIMIT_MULTIPLIER,
        nonces: Optional[NonceManager] = None,
        session: Optional[requests.Session] = None,
    ):
        self.receipt_timeout = receipt_timeout
        self.backoff = backoff
        self.gas_multiplier = gas_multiplier
        self.nonces = nonces or NonceManager()
        self._session = session or requests.Session()
        self._checked_endpoints: Set[str] = set()
        self._checked_lock = threading.Lock()

    def client(self, network: NetworkConfig) -> RpcClient:
        return RpcClient(network.rpc_url, session=self._session)

    def check_chain_id(self, client: RpcClient, network: NetworkConfig) -> None:
        """
        Make sure the RPC endpoint serves the chain the network is configured for.

        Checked once per endpoint; a signed transaction never leaves for a
        node on another chain.

        Raises:
            ConfigError: CHAIN_ID_MISMATCH
        """
        with self._checked_lock:
            if network.rpc_url in self._checked_endpoints:
                return
        actual = client.chain_id()
        if actual != network.chain_id:
            raise ConfigError(
                ConfigErrorKind.CHAIN_ID_MISMATCH,
                f"RPC endpoint for '{network.name}' serves chain {actual}, expected {network.chain_id}",
                network.name,
            )
        with self._checked_lock:
            self._checked_endpoints.add(network.rpc_url)

    def deploy(
        self,
        request: DeploymentRequest,
        network: NetworkConfig,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> TransactionReceipt:
        """
        Deploy a contract.

        Args:
            request: Artifact, constructor arguments and value to send
            network: Resolved network
            timeout: Seconds to wait for the receipt (defaults to receipt_timeout)
            cancel: Token that aborts receipt polling

        Returns:
            Successful receipt with the new contract address

        Raises:
            ConfigError: If the RPC endpoint serves a different chain
            EncodingError: If constructor arguments do not match the ABI
            SimulationError: If the creation would revert
            BroadcastError: REVERTED, TIMEOUT or CANCELLED, with the transaction hash
        """
        data = encode_deployment(request.artifact, request.constructor_args)
        tx = {"from": network.signer, "data": data, "value": request.value}

        logger.info(
            "Deploying %s to %s from %s",
            request.artifact.contract_name,
            network.name,
            network.signer,
        )
        return self._transact(tx, network, request.artifact.abi, timeout, cancel)

    def call(
        self,
        contract_address: str,
        abi_entry: Dict[str, Any],
        args: Sequence[Any],
        network: NetworkConfig,
        value: int = 0,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
        abi: Optional[List[Dict[str, Any]]] = None,
    ) -> CallResult:
        """
        Call a contract function.

        ``view`` and ``pure`` functions are executed with ``eth_call`` and
        their outputs decoded; anything else is sent as a transaction.

        Args:
            abi: Full contract ABI, used to decode custom revert errors

        Raises:
            EncodingError: If arguments do not match the function ABI
            SimulationError: If the call would revert
            BroadcastError: For transactions that revert, time out or are cancelled
        """
        if not is_address(contract_address):
            raise EncodingError(f"Not a contract address: {contract_address!r}")
        to = to_checksum_address(contract_address)
        data = encode_call(abi_entry, args)
        tx = {"from": network.signer, "to": to, "data": data, "value": value}
        abi = abi or [abi_entry]

        if abi_entry.get("stateMutability") in _READ_ONLY or abi_entry.get("constant"):
            client = self.client(network)
            try:
                result = client.call(tx)
            except RpcError as e:
                raise SimulationError(decode_revert_reason(e.data, abi) or _reason(e), e.data) from e
            return CallResult(outputs=decode_outputs(abi_entry, result))

        logger.info("Calling %s on %s at %s", abi_entry.get("name"), network.name, to)
        receipt = self._transact(tx, network, abi, timeout, cancel)
        return CallResult(receipt=receipt)

    def estimate(
        self,
        client: RpcClient,
        tx: Dict[str, Any],
        abi: Optional[List[Dict[str, Any]]] = None,
    ) -> GasEstimate:
        """
        Simulate a transaction and price it.

        Raises:
            SimulationError: If the node reports that the transaction would revert
        """
        try:
            gas = client.estimate_gas(tx)
        except RpcError as e:
            reason = decode_revert_reason(e.data, abi) or _reason(e)
            logger.warning("Simulation failed: %s", reason)
            raise SimulationError(reason, e.data) from e

        gas_limit = int(gas * self.gas_multiplier)
        fees = self._fee_fields(client)
        per_gas = fees.get("maxFeePerGas", fees.get("gasPrice", 0))
        estimate = GasEstimate(
            gas_limit=gas_limit,
            fees=fees,
            max_cost=gas_limit * per_gas + int(tx.get("value") or 0),
        )
        logger.info("Estimated gas %d (limit %d), max cost %d wei", gas, gas_limit, estimate.max_cost)
        return estimate

    @staticmethod
    def _fee_fields(client: RpcClient) -> Dict[str, int]:
        """EIP-1559 fee fields when the chain has a base fee, legacy gasPrice otherwise."""
        latest = client.get_block("latest") or {}
        base_fee = latest.get("baseFeePerGas")
        if base_fee is None:
            return {"gasPrice": client.gas_price()}
        tip = client.max_priority_fee()
        return {"maxFeePerGas": int(base_fee, 16) * 2 + tip, "maxPriorityFeePerGas": tip}

    def _transact(
        self,
        tx: Dict[str, Any],
        network: NetworkConfig,
        abi: Optional[List[Dict[str, Any]]],
        timeout: Optional[float],
        cancel: Optional[CancelToken],
    ) -> TransactionReceipt:
        client = self.client(network)
        self.check_chain_id(client, network)

        # Simulation happens before a nonce is reserved
        estimate = self.estimate(client, tx, abi)

        with self.nonces.reserve(client, network.chain_id, network.signer) as nonce:
            unsigned = {
                "chainId": network.chain_id,
                "nonce": nonce,
                "gas": estimate.gas_limit,
                "value": int(tx.get("value") or 0),
                "data": tx["data"],
                **estimate.fees,
            }
            if tx.get("to"):
                unsigned["to"] = tx["to"]
            signed = Account.from_key(network.signing_key).sign_transaction(unsigned)
            tx_hash = client.send_raw_transaction(signed.raw_transaction)

        logger.info("Submitted %s (nonce %d) on %s", tx_hash, nonce, network.name)

        receipt = self.wait_for_receipt(client, tx_hash, nonce=nonce, timeout=timeout, cancel=cancel)
        if receipt.status is TxStatus.FAILED:
            logger.error("Transaction %s reverted in block %d", tx_hash, receipt.block_number)
            raise BroadcastError(BroadcastErrorKind.REVERTED, tx_hash, receipt)
        return receipt

    def wait_for_receipt(
        self,
        client: RpcClient,
        tx_hash: str,
        nonce: Optional[int] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> TransactionReceipt:
        """
        Poll for a transaction's receipt with bounded exponential backoff.

        Transport failures and JSON-RPC errors while polling are logged and
        polling continues until the deadline.

        Raises:
            BroadcastError: TIMEOUT or CANCELLED; the hash stays valid for
                            later lookup since the transaction may still be mined
        """

        def check() -> Optional[TransactionReceipt]:
            try:
                data = client.get_transaction_receipt(tx_hash)
            except (RpcTransportError, RpcError) as e:
                # Rate limits and node hiccups; the transaction is already out
                logger.warning("Receipt lookup for %s failed: %s", tx_hash, e)
                return None
            if not data or data.get("blockNumber") is None:
                return None
            return TransactionReceipt.from_rpc(data, nonce=nonce)

        try:
            return poll_until(
                check,
                self.backoff.delays(),
                timeout=self.receipt_timeout if timeout is None else timeout,
                cancel=cancel,
            )
        except PollTimeoutError:
            logger.error("No receipt for %s before the deadline", tx_hash)
            raise BroadcastError(BroadcastErrorKind.TIMEOUT, tx_hash) from None
        except PollCancelledError:
            raise BroadcastError(BroadcastErrorKind.CANCELLED, tx_hash) from None


def _reason(error: RpcError) -> Optional[str]:
    message = str(error)
    prefix = "RPC error: "
    if message.startswith(prefix):
        message = message[len(prefix):]
    return decode_revert_reason(message) or message
