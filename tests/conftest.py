"""Shared pytest fixtures for chaindeploy tests."""

import json
import posixpath
import re
import threading
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import responses
import rlp
from eth_abi import encode
from eth_account import Account
from eth_utils import keccak, to_checksum_address

from chaindeploy.broadcaster import Broadcaster
from chaindeploy.build import Builder
from chaindeploy.config import Settings, resolve
from chaindeploy.orchestrator import Orchestrator
from chaindeploy.polling import Backoff
from chaindeploy.types import ArtifactRef, NetworkConfig
from chaindeploy.verifier import Verifier

RPC_URL = "http://sepolia-rpc.example.com"

# Well-known development keys (Hardhat / Anvil accounts #0 and #1)
SIGNER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
SIGNER_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
OTHER_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
OTHER_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

EXPLORER_API_KEY = "test-explorer-key"

TOKEN_ABI: List[Dict[str, Any]] = [
    {
        "type": "constructor",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "maxSupply", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "mint",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "totalSupply",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": "Transfer",
        "anonymous": False,
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "value", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "error",
        "name": "SupplyExceeded",
        "inputs": [{"name": "requested", "type": "uint256"}],
    },
]

TOKEN_SOURCE = """// SPDX-License-Identifier: MIT
pragma solidity ^0.8.24;

contract MyToken {
    uint256 public maxSupply;
}
"""

COMPILER_COMMIT = "e11e3b95"

IMPORT = re.compile(r'import\s+"([^"]+)"')


class RpcFault(Exception):
    def __init__(self, message: str, code: int = -32000, data: Any = None):
        super().__init__(message)
        self.error = {"code": code, "message": message}
        if data is not None:
            self.error["data"] = data


def revert_data(reason: str) -> str:
    """Error(string) revert payload, as nodes return it."""
    return "0x08c379a0" + encode(["string"], [reason]).hex()


def decode_raw_transaction(raw: bytes) -> Dict[str, Any]:
    """Pull nonce, recipient, value and data out of a signed raw transaction."""
    if raw[0] == 2:
        fields = rlp.decode(raw[1:])
        nonce, to, value, data = fields[1], fields[5], fields[6], fields[7]
        tx_type = 2
    else:
        fields = rlp.decode(raw)
        nonce, to, value, data = fields[0], fields[3], fields[4], fields[5]
        tx_type = 0
    return {
        "nonce": int.from_bytes(nonce, "big"),
        "to": to_checksum_address(to) if to else None,
        "value": int.from_bytes(value, "big"),
        "data": "0x" + data.hex(),
        "type": tx_type,
    }


class FakeNode:
    """
    In-memory JSON-RPC node served through `responses`.

    Enforces per-sender nonce ordering, so colliding or skipped nonces fail
    the same way they would on a real node.
    """

    def __init__(self, url: str = RPC_URL):
        self.url = url
        self.lock = threading.Lock()
        self.calls: List[str] = []
        self.nonces: Dict[str, int] = defaultdict(int)
        self.sent: List[Dict[str, Any]] = []
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.block_number = 100
        self.chain_id = 11155111

        # Behaviour switches
        self.base_fee: Optional[int] = None
        self.gas_price = 10**9
        self.priority_fee = 10**8
        self.gas_estimate = 500_000
        self.revert_reason: Optional[str] = None
        self.revert_payload: Any = None
        self.required_value: Optional[int] = None
        self.receipt_status = 1
        self.receipt_delay = 0
        self.never_mine = False
        self.receipt_faults = 0
        self.fail_next_send = False
        self.call_result = "0x"
        self._receipt_polls: Dict[str, int] = defaultdict(int)

    def register(self, rsps: responses.RequestsMock) -> None:
        rsps.add_callback(
            responses.POST,
            self.url,
            callback=self.handle,
            content_type="application/json",
        )

    def count(self, method: str) -> int:
        return self.calls.count(method)

    def handle(self, request):
        body = json.loads(request.body)
        with self.lock:
            self.calls.append(body["method"])
            handler = getattr(self, "rpc_" + body["method"])
            try:
                reply = {"jsonrpc": "2.0", "id": body["id"], "result": handler(*body["params"])}
            except RpcFault as fault:
                reply = {"jsonrpc": "2.0", "id": body["id"], "error": fault.error}
        return (200, {}, json.dumps(reply))

    def _simulate(self, tx: Dict[str, Any]) -> None:
        if self.revert_payload is not None:
            raise RpcFault("execution reverted", code=3, data=self.revert_payload)
        if self.revert_reason is not None:
            raise RpcFault(
                f"execution reverted: {self.revert_reason}",
                code=3,
                data=revert_data(self.revert_reason),
            )
        value = int(tx.get("value", "0x0"), 16)
        if self.required_value is not None and value != self.required_value:
            raise RpcFault(
                "execution reverted: Incorrect payment",
                code=3,
                data=revert_data("Incorrect payment"),
            )

    def rpc_eth_chainId(self):
        return hex(self.chain_id)

    def rpc_eth_estimateGas(self, tx):
        self._simulate(tx)
        return hex(self.gas_estimate)

    def rpc_eth_call(self, tx, block):
        self._simulate(tx)
        return self.call_result

    def rpc_eth_getBlockByNumber(self, tag, full):
        block = {"number": hex(self.block_number)}
        if self.base_fee is not None:
            block["baseFeePerGas"] = hex(self.base_fee)
        return block

    def rpc_eth_gasPrice(self):
        return hex(self.gas_price)

    def rpc_eth_maxPriorityFeePerGas(self):
        return hex(self.priority_fee)

    def rpc_eth_getTransactionCount(self, address, tag):
        return hex(self.nonces[to_checksum_address(address)])

    def rpc_eth_sendRawTransaction(self, raw_hex):
        if self.fail_next_send:
            self.fail_next_send = False
            raise RpcFault("replacement transaction underpriced")

        raw = bytes.fromhex(raw_hex[2:])
        sender = Account.recover_transaction(raw_hex)
        tx = decode_raw_transaction(raw)

        expected = self.nonces[sender]
        if tx["nonce"] < expected:
            raise RpcFault("nonce too low")
        if tx["nonce"] > expected:
            raise RpcFault("nonce too high")
        self.nonces[sender] = expected + 1

        tx_hash = "0x" + keccak(raw).hex()
        contract_address = None
        if tx["to"] is None:
            contract_address = to_checksum_address(
                keccak(rlp.encode([bytes.fromhex(sender[2:]), tx["nonce"]]))[12:]
            )

        self.block_number += 1
        self.receipts[tx_hash] = {
            "transactionHash": tx_hash,
            "contractAddress": contract_address,
            "status": hex(self.receipt_status),
            "gasUsed": hex(self.gas_estimate - 1000),
            "blockNumber": hex(self.block_number),
            "effectiveGasPrice": hex(self.gas_price),
        }
        self.sent.append({"hash": tx_hash, "sender": sender, **tx})
        return tx_hash

    def rpc_eth_getTransactionReceipt(self, tx_hash):
        if self.receipt_faults:
            self.receipt_faults -= 1
            raise RpcFault("daily request count exceeded, request rate limited", code=-32005)
        self._receipt_polls[tx_hash] += 1
        if self.never_mine or self._receipt_polls[tx_hash] <= self.receipt_delay:
            return None
        return self.receipts.get(tx_hash)


class FakeCompiler:
    """
    Stands in for solc: one contract per `contract X` declaration, TOKEN_ABI for all.

    Relative `import "./X.sol"` statements are loaded from disk against
    base_path, the way solc resolves them.
    """

    def __init__(self):
        self.calls = 0
        self.base_path: Optional[str] = None
        self.allow_paths: Optional[List[str]] = None

    def _load_imports(self, units: Dict[str, str], base_path: Optional[str], errors: List[Dict[str, Any]]) -> None:
        pending = list(units)
        while pending:
            name = pending.pop()
            for target in IMPORT.findall(units[name]):
                unit = target
                if target.startswith("."):
                    unit = posixpath.normpath(posixpath.join(posixpath.dirname(name), target))
                if unit in units:
                    continue
                path = Path(base_path or ".") / unit
                if not path.is_file():
                    start = units[name].index(target)
                    errors.append(
                        {
                            "severity": "error",
                            "errorCode": "6275",
                            "message": f'Source "{unit}" not found',
                            "sourceLocation": {"file": name, "start": start, "end": start + len(target)},
                        }
                    )
                    continue
                units[unit] = path.read_text()
                pending.append(unit)

    def __call__(
        self,
        input_data: Dict[str, Any],
        version: str,
        base_path: Optional[str] = None,
        allow_paths: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        self.calls += 1
        self.base_path = base_path
        self.allow_paths = allow_paths
        units = {name: source["content"] for name, source in input_data["sources"].items()}
        errors: List[Dict[str, Any]] = []
        self._load_imports(units, base_path, errors)

        literal = input_data["settings"].get("metadata", {}).get("useLiteralContent", False)
        metadata_sources = {
            name: {"content": content} if literal else {"keccak256": "0x" + keccak(text=content).hex()}
            for name, content in units.items()
        }

        contracts: Dict[str, Any] = {}
        for name, content in units.items():
            if "syntax error" in content:
                start = content.index("syntax error")
                errors.append(
                    {
                        "severity": "error",
                        "errorCode": "2314",
                        "message": "Expected ';' but got identifier",
                        "formattedMessage": "ParserError: Expected ';' but got identifier",
                        "sourceLocation": {"file": name, "start": start, "end": start + 12},
                    }
                )
            if "unused" in content:
                errors.append(
                    {
                        "severity": "warning",
                        "errorCode": "2072",
                        "message": "Unused local variable.",
                        "sourceLocation": {"file": name, "start": 0, "end": 1},
                    }
                )
            for contract in re.findall(r"contract (\w+)", content):
                contracts.setdefault(name, {})[contract] = {
                    "abi": TOKEN_ABI,
                    "evm": {
                        "bytecode": {"object": "6080604052348015600f57600080fd5b50"},
                        "deployedBytecode": {"object": "6080604052"},
                    },
                    "metadata": json.dumps(
                        {
                            "compiler": {"version": f"{version}+commit.{COMPILER_COMMIT}"},
                            "sources": metadata_sources,
                        }
                    ),
                }
        output: Dict[str, Any] = {"contracts": contracts, "sources": {name: {} for name in units}}
        if errors:
            output["errors"] = errors
        return output


@pytest.fixture
def base_environ(tmp_path: Path) -> Dict[str, str]:
    """Environment variables for a fully configured sepolia deployment."""
    return {
        "SEP_RPC_URL": RPC_URL,
        "PRIVATE_KEY": SIGNER_KEY,
        "ETHERSCAN_API_KEY": EXPLORER_API_KEY,
        "CHAINDEPLOY_CACHE_DIR": str(tmp_path / "cache"),
        "CHAINDEPLOY_DEPLOYMENTS_DIR": str(tmp_path / "deployments"),
        "CHAINDEPLOY_SOLC_VERSION": "0.8.24",
    }


@pytest.fixture
def settings(base_environ: Dict[str, str]) -> Settings:
    return Settings.from_env(environ=base_environ)


@pytest.fixture
def network(settings: Settings) -> NetworkConfig:
    return resolve(settings, "sepolia", require_explorer=True)


@pytest.fixture
def rsps():
    """Active `responses` mock; unregistered URLs raise ConnectionError."""
    with responses.RequestsMock(assert_all_requests_are_fired=False) as mock:
        yield mock


@pytest.fixture
def node(rsps: responses.RequestsMock) -> FakeNode:
    fake = FakeNode()
    fake.register(rsps)
    return fake


@pytest.fixture
def broadcaster() -> Broadcaster:
    """Broadcaster with polling fast enough for tests."""
    return Broadcaster(receipt_timeout=2.0, backoff=Backoff(initial=0.005, factor=2.0, cap=0.02))


@pytest.fixture
def verifier() -> Verifier:
    return Verifier(poll_interval=0.001, max_attempts=4)


@pytest.fixture
def compiler() -> FakeCompiler:
    return FakeCompiler()


@pytest.fixture
def builder(tmp_path: Path, compiler: FakeCompiler) -> Builder:
    return Builder("0.8.24", cache_dir=tmp_path / "cache", compiler=compiler, project_root=tmp_path)


@pytest.fixture
def token_source(tmp_path: Path) -> Path:
    """A MyToken.sol file on disk."""
    path = tmp_path / "contracts" / "MyToken.sol"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(TOKEN_SOURCE)
    return path


@pytest.fixture
def token_artifact() -> ArtifactRef:
    return ArtifactRef(
        contract_name="MyToken",
        bytecode="0x6080604052348015600f57600080fd5b50",
        abi=TOKEN_ABI,
        source_name="contracts/MyToken.sol",
        deployed_bytecode="0x6080604052",
        compiler_version=f"0.8.24+commit.{COMPILER_COMMIT}",
        standard_json_input={
            "language": "Solidity",
            "sources": {"contracts/MyToken.sol": {"content": TOKEN_SOURCE}},
            "settings": {"optimizer": {"enabled": True, "runs": 200}},
        },
        build_key="abc123",
    )


@pytest.fixture
def orchestrator(settings: Settings, builder: Builder, broadcaster: Broadcaster, verifier: Verifier) -> Orchestrator:
    """Orchestrator wired to the fake compiler and fast pollers; records go under tmp_path."""
    return Orchestrator(settings, builder=builder, broadcaster=broadcaster, verifier=verifier)
