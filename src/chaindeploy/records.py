"""Deployment records in hardhat-deploy layout, and a registry to read them back."""

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .exceptions import ContractNotFoundError, DefectiveDeploymentError, NetworkNotFoundError
from .paths import get_default_deployments_dir, get_record_path
from .types import ArtifactRef, TransactionReceipt


@dataclass
class DeploymentRecord:
    """A recorded deployment of one contract on one network."""

    # Required fields
    name: str  # Contract name, e.g., "MyToken"
    network: str  # e.g., "sepolia"
    address: str  # Checksummed address
    block: int  # Deployment block number
    abi: List[Dict[str, Any]]

    # Optional fields (hardhat-deploy)
    transaction_hash: Optional[str] = None
    bytecode: Optional[str] = None
    deployed_bytecode: Optional[str] = None
    constructor_args: Optional[List[Any]] = None
    solc_input_hash: Optional[str] = None
    num_deployments: Optional[int] = None
    source_name: Optional[str] = None
    compiler_version: Optional[str] = None


def _jsonable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def write_deployment_record(
    deployments_dir: Union[Path, str],
    network: str,
    chain_id: int,
    artifact: ArtifactRef,
    receipt: TransactionReceipt,
    constructor_args: Sequence[Any] = (),
) -> Path:
    """
    Write a hardhat-deploy style record for a successful deployment.

    Also writes ``<network>/.chainId``. An existing record for the same
    contract is replaced and its ``numDeployments`` incremented.

    Returns:
        Path of the written record
    """
    path = get_record_path(deployments_dir, network, artifact.contract_name)
    path.parent.mkdir(parents=True, exist_ok=True)
    (path.parent / ".chainId").write_text(str(chain_id))

    previous = 0
    if path.exists():
        try:
            with open(path) as f:
                previous = json.load(f).get("numDeployments", 1)
        except json.JSONDecodeError:
            previous = 0

    data = {
        "address": receipt.contract_address,
        "abi": artifact.abi,
        "transactionHash": receipt.tx_hash,
        "receipt": {
            "transactionHash": receipt.tx_hash,
            "contractAddress": receipt.contract_address,
            "blockNumber": receipt.block_number,
            "gasUsed": receipt.gas_used,
            "status": receipt.status.value,
        },
        "args": _jsonable(list(constructor_args)),
        "numDeployments": previous + 1,
        "solcInputHash": artifact.build_key,
        "bytecode": artifact.bytecode,
        "deployedBytecode": artifact.deployed_bytecode,
        "sourceName": artifact.source_name,
        "compilerVersion": artifact.compiler_version,
    }
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    return path


def parse_hardhat_deployment(file_path: Path) -> Dict[str, Any]:
    """
    Parse a hardhat-deploy JSON file.

    Args:
        file_path: Path to contract deployment JSON file

    Returns:
        Dictionary with canonical field names:
        - Required: address, block, abi
        - Optional: transaction_hash, bytecode, deployed_bytecode,
          constructor_args, solc_input_hash, num_deployments,
          source_name, compiler_version

    Raises:
        DefectiveDeploymentError: If block number is missing from deployment file
    """
    with open(file_path) as f:
        data = json.load(f)

    # Try to get block number from receipt first, fall back to top-level
    block_number = None
    if "receipt" in data and "blockNumber" in data["receipt"]:
        block_number = data["receipt"]["blockNumber"]
    elif "blockNumber" in data:
        block_number = data["blockNumber"]

    if block_number is None:
        raise DefectiveDeploymentError(
            f"Missing block number in hardhat deployment file: {file_path}"
        )

    result: Dict[str, Any] = {
        "address": data["address"],
        "block": block_number,
        "abi": data["abi"],
    }

    optional_fields = {
        "transactionHash": "transaction_hash",
        "bytecode": "bytecode",
        "deployedBytecode": "deployed_bytecode",
        "args": "constructor_args",
        "solcInputHash": "solc_input_hash",
        "numDeployments": "num_deployments",
        "sourceName": "source_name",
        "compilerVersion": "compiler_version",
    }
    for hardhat_name, canonical_name in optional_fields.items():
        if data.get(hardhat_name) is not None:
            result[canonical_name] = data[hardhat_name]

    return result


class DeploymentRegistry:
    """Writes and reads the deployment records of a project."""

    def __init__(self, deployments_dir: Optional[Union[Path, str]] = None):
        """
        Args:
            deployments_dir: Records root (defaults to ./deployments)
        """
        if deployments_dir is None:
            deployments_dir = get_default_deployments_dir()
        self.root = Path(deployments_dir)
        self._lock = threading.Lock()

    def record(
        self,
        artifact: ArtifactRef,
        receipt: TransactionReceipt,
        network: str,
        chain_id: int,
        constructor_args: Sequence[Any] = (),
    ) -> Path:
        with self._lock:
            return write_deployment_record(
                self.root, network, chain_id, artifact, receipt, constructor_args
            )

    def has_network(self, network: str) -> bool:
        return (self.root / network).is_dir()

    def networks(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    def contract_names(self, network: str) -> List[str]:
        """
        List contracts with a record on a network.

        Raises:
            NetworkNotFoundError: If the network has no records
        """
        if not self.has_network(network):
            raise NetworkNotFoundError(f"No deployments recorded for network '{network}'")
        return sorted(p.stem for p in (self.root / network).glob("*.json"))

    def chain_id(self, network: str) -> Optional[int]:
        path = self.root / network / ".chainId"
        return int(path.read_text().strip()) if path.exists() else None

    def deployment(self, contract_name: str, network: str) -> DeploymentRecord:
        """
        Get the recorded deployment of a contract.

        Raises:
            NetworkNotFoundError: If the network has no records
            ContractNotFoundError: If the contract has no record on the network
            DefectiveDeploymentError: If the record lacks a block number
        """
        if not self.has_network(network):
            raise NetworkNotFoundError(f"No deployments recorded for network '{network}'")

        path = get_record_path(self.root, network, contract_name)
        if not path.exists():
            raise ContractNotFoundError(
                f"Contract '{contract_name}' has no deployment on network '{network}'"
            )

        return DeploymentRecord(name=contract_name, network=network, **parse_hardhat_deployment(path))

    def all_deployments(self, network: str) -> List[DeploymentRecord]:
        """All readable records on a network, sorted by block number."""
        result = []
        for name in self.contract_names(network):
            try:
                result.append(self.deployment(name, network))
            except DefectiveDeploymentError:
                continue
        result.sort(key=lambda d: d.block)
        return result

