"""Data types and dataclasses for chaindeploy."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class CompilerDiagnostic:
    """One message reported by the compiler."""

    file: Optional[str]
    line: Optional[int]
    column: Optional[int]
    severity: str
    message: str
    code: Optional[str] = None

    def __str__(self) -> str:
        location = self.file or "<unknown>"
        if self.line is not None:
            location = f"{location}:{self.line}:{self.column or 1}"
        return f"{location}: {self.severity}: {self.message}"


@dataclass(frozen=True)
class ArtifactRef:
    """Compiled bytecode and ABI of one contract."""

    # Required fields
    contract_name: str  # e.g., "MyToken"
    bytecode: str  # 0x-prefixed creation bytecode
    abi: List[Dict[str, Any]]

    # Optional fields (from the compiler run)
    source_name: str = ""  # e.g., "contracts/MyToken.sol"
    deployed_bytecode: Optional[str] = field(default=None, repr=False)
    compiler_version: Optional[str] = None  # e.g., "0.8.24+commit.e11e3b95"
    standard_json_input: Optional[Dict[str, Any]] = field(default=None, repr=False)
    build_key: Optional[str] = None

    @property
    def fully_qualified_name(self) -> str:
        return f"{self.source_name}:{self.contract_name}"

    def constructor_abi(self) -> Optional[Dict[str, Any]]:
        for item in self.abi:
            if item.get("type") == "constructor":
                return item
        return None

    def function_abi(self, name: str) -> Optional[Dict[str, Any]]:
        for item in self.abi:
            if item.get("type") == "function" and item.get("name") == name:
                return item
        return None


@dataclass(frozen=True)
class NetworkConfig:
    """Everything needed to talk to, and sign for, one network."""

    name: str  # e.g., "sepolia"
    rpc_url: str
    chain_id: int
    signing_key: str = field(repr=False)
    signer: str = ""  # Checksummed address of signing_key

    explorer_url: Optional[str] = None
    explorer_api_url: Optional[str] = None
    explorer_api_key: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class DeploymentRequest:
    """A single contract creation to broadcast."""

    artifact: ArtifactRef
    constructor_args: Tuple[Any, ...] = ()
    value: int = 0  # wei sent with the creation


class TxStatus(Enum):
    SUCCESS = 1
    FAILED = 0


@dataclass(frozen=True)
class TransactionReceipt:
    """Terminal record of a mined transaction."""

    tx_hash: str
    contract_address: Optional[str]
    status: TxStatus
    gas_used: int
    block_number: int
    nonce: Optional[int] = None
    effective_gas_price: Optional[int] = None

    @classmethod
    def from_rpc(cls, data: Dict[str, Any], nonce: Optional[int] = None) -> "TransactionReceipt":
        """Build a receipt from an ``eth_getTransactionReceipt`` result."""
        gas_price = data.get("effectiveGasPrice")
        return cls(
            tx_hash=data["transactionHash"],
            contract_address=data.get("contractAddress"),
            status=TxStatus.SUCCESS if int(data["status"], 16) == 1 else TxStatus.FAILED,
            gas_used=int(data["gasUsed"], 16),
            block_number=int(data["blockNumber"], 16),
            nonce=nonce,
            effective_gas_price=int(gas_price, 16) if gas_price else None,
        )


@dataclass(frozen=True)
class CallResult:
    """Result of a contract call: decoded outputs, or the receipt of a transaction."""

    outputs: Optional[Tuple[Any, ...]] = None
    receipt: Optional[TransactionReceipt] = None


@dataclass(frozen=True)
class GasEstimate:
    """Gas limit and fee fields chosen for a transaction, and its worst-case cost."""

    gas_limit: int
    fees: Dict[str, int]
    max_cost: int  # wei, including value


class VerificationState(Enum):
    SUBMITTED = "submitted"
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


_TRANSITIONS = {
    VerificationState.SUBMITTED: {VerificationState.PENDING},
    VerificationState.PENDING: {
        VerificationState.PENDING,
        VerificationState.VERIFIED,
        VerificationState.FAILED,
    },
    VerificationState.VERIFIED: set(),
    VerificationState.FAILED: set(),
}


@dataclass
class VerificationJob:
    """A source verification request tracked on a block explorer."""

    contract_address: str
    source_ref: str  # Fully qualified name, e.g., "contracts/MyToken.sol:MyToken"
    guid: str
    state: VerificationState = VerificationState.SUBMITTED
    reason: Optional[str] = None
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in (VerificationState.VERIFIED, VerificationState.FAILED)

    def advance(self, state: VerificationState, reason: Optional[str] = None) -> None:
        """
        Move the job to a new state.

        Raises:
            ValueError: If the transition is not allowed from the current state
        """
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(
                f"Illegal verification transition {self.state.value} -> {state.value}"
            )
        self.state = state
        if reason is not None:
            self.reason = reason


class DeploymentStatus(Enum):
    DEPLOYED = "deployed"
    VERIFIED = "verified"
    DEPLOYED_UNVERIFIED = "deployed-unverified"


@dataclass
class DeploymentOutcome:
    """Final report of one deployment run."""

    network: str
    artifact: ArtifactRef
    receipt: TransactionReceipt
    status: DeploymentStatus
    verification: Optional[VerificationJob] = None
    verification_error: Optional[Exception] = None
    record_path: Optional[str] = None  # None when the record could not be written
