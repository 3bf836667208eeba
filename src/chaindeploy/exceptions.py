"""Custom exception classes for chaindeploy."""

from enum import Enum
from typing import TYPE_CHECKING, Any, List, Optional

if TYPE_CHECKING:
    from .types import CompilerDiagnostic, TransactionReceipt, VerificationJob


class ConfigErrorKind(Enum):
    """Reasons a network configuration cannot be resolved."""

    UNKNOWN_NETWORK = "unknown-network"
    MISSING_RPC_URL = "missing-rpc-url"
    MALFORMED_RPC_URL = "malformed-rpc-url"
    MISSING_KEY = "missing-key"
    MALFORMED_KEY = "malformed-key"
    MISSING_EXPLORER_KEY = "missing-explorer-key"
    INVALID_SETTING = "invalid-setting"
    CHAIN_ID_MISMATCH = "chain-id-mismatch"


class BroadcastErrorKind(Enum):
    """Outcomes of a submitted transaction that are not a success."""

    REVERTED = "reverted"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class VerificationErrorKind(Enum):
    """Ways a source verification job can end without success."""

    TIMED_OUT = "timed-out"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class DeploymentError(Exception):
    """Base exception for deployment-related errors."""

    pass


class ConfigError(DeploymentError, ValueError):
    """Raised when environment configuration is missing or malformed."""

    def __init__(self, kind: ConfigErrorKind, message: str, network: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.network = network


class CompileError(DeploymentError):
    """Raised when the compiler reports errors for the given sources."""

    def __init__(self, diagnostics: List["CompilerDiagnostic"]):
        self.diagnostics = list(diagnostics)
        lines = [str(d) for d in self.diagnostics] or ["compilation failed"]
        super().__init__("\n".join(lines))


class ContractNotFoundError(DeploymentError, ValueError):
    """Raised when a requested contract is not among the build outputs or records."""

    pass


class NetworkNotFoundError(DeploymentError, ValueError):
    """Raised when a requested network has no deployment records."""

    pass


class DefectiveDeploymentError(DeploymentError, ValueError):
    """Raised when a deployment record is missing its block number."""

    pass


class EncodingError(DeploymentError, ValueError):
    """Raised when arguments do not match the ABI they are encoded against."""

    pass


class RpcError(DeploymentError, ValueError):
    """Raised when a JSON-RPC endpoint answers with an error object."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class RpcTransportError(DeploymentError, RuntimeError):
    """Raised when a JSON-RPC endpoint cannot be reached or answers garbage."""

    pass


class SimulationError(DeploymentError):
    """Raised when a transaction would revert, detected before broadcasting."""

    def __init__(self, reason: Optional[str], data: Any = None):
        message = f"Transaction would revert: {reason}" if reason else "Transaction would revert"
        super().__init__(message)
        self.reason = reason
        self.data = data


class BroadcastError(DeploymentError):
    """Raised for post-broadcast failures; always carries the transaction hash."""

    def __init__(
        self,
        kind: BroadcastErrorKind,
        tx_hash: str,
        receipt: Optional["TransactionReceipt"] = None,
    ):
        super().__init__(f"Transaction {tx_hash} {kind.value}")
        self.kind = kind
        self.tx_hash = tx_hash
        self.receipt = receipt


class VerificationError(DeploymentError):
    """Raised when source verification does not complete successfully."""

    def __init__(
        self,
        kind: VerificationErrorKind,
        message: str,
        job: Optional["VerificationJob"] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.job = job
