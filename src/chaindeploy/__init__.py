"""
chaindeploy: compile, deploy and verify smart contracts on Ethereum-compatible networks
"""

from importlib.metadata import PackageNotFoundError, version

from .broadcaster import Broadcaster
from .build import Builder
from .config import Settings, resolve
from .exceptions import (
    BroadcastError,
    BroadcastErrorKind,
    CompileError,
    ConfigError,
    ConfigErrorKind,
    ContractNotFoundError,
    DeploymentError,
    EncodingError,
    SimulationError,
    VerificationError,
    VerificationErrorKind,
)
from .orchestrator import Orchestrator
from .polling import CancelToken
from .records import DeploymentRegistry
from .types import (
    ArtifactRef,
    DeploymentOutcome,
    DeploymentRequest,
    NetworkConfig,
    TransactionReceipt,
    VerificationJob,
)
from .verifier import Verifier

try:
    __version__ = version("chaindeploy")
except PackageNotFoundError:
    __version__ = None

__all__ = [
    "Orchestrator",
    "Builder",
    "Broadcaster",
    "Verifier",
    "Settings",
    "resolve",
    "CancelToken",
    "DeploymentRegistry",
    "ArtifactRef",
    "NetworkConfig",
    "DeploymentRequest",
    "TransactionReceipt",
    "VerificationJob",
    "DeploymentOutcome",
    "DeploymentError",
    "ConfigError",
    "ConfigErrorKind",
    "CompileError",
    "ContractNotFoundError",
    "EncodingError",
    "SimulationError",
    "BroadcastError",
    "BroadcastErrorKind",
    "VerificationError",
    "VerificationErrorKind",
]
