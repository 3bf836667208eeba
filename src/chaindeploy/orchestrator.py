"""Build -> select network -> broadcast -> verify pipeline."""

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, List, Optional, Sequence, Union

from .abi import coerce_arguments
from .broadcaster import Broadcaster
from .build import Builder
from .config import Settings, resolve
from .exceptions import DeploymentError, VerificationError
from .polling import CancelToken
from .records import DeploymentRegistry
from .types import (
    ArtifactRef,
    DeploymentOutcome,
    DeploymentRequest,
    DeploymentStatus,
    NetworkConfig,
    TransactionReceipt,
    VerificationJob,
)
from .verifier import Verifier

logger = logging.getLogger(__name__)

SourcePaths = Sequence[Union[Path, str]]


class Orchestrator:
    """Runs deployments end to end from one Settings snapshot."""

    def __init__(
        self,
        settings: Settings,
        builder: Optional[Builder] = None,
        broadcaster: Optional[Broadcaster] = None,
        verifier: Optional[Verifier] = None,
        registry: Optional[DeploymentRegistry] = None,
    ):
        self.settings = settings
        self.builder = builder or Builder(
            settings.solc_version,
            cache_dir=settings.cache_dir,
            project_root=settings.project_root,
            remappings=settings.remappings,
        )
        self.broadcaster = broadcaster or Broadcaster(receipt_timeout=settings.receipt_timeout)
        self.verifier = verifier or Verifier(
            poll_interval=settings.verify_interval,
            max_attempts=settings.verify_max_attempts,
        )
        self.registry = registry or DeploymentRegistry(settings.deployments_dir)

    def run(
        self,
        sources: SourcePaths,
        contract_name: Optional[str],
        network_name: str,
        constructor_args: Sequence[Any] = (),
        value: int = 0,
        verify: bool = False,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> DeploymentOutcome:
        """
        Deploy one contract, optionally verifying its source.

        Configuration is resolved before anything else, so a missing key or
        URL aborts with no compilation and no network traffic.

        Args:
            sources: Solidity files to compile
            contract_name: Contract to deploy (see Builder.build)
            network_name: Network to deploy to
            constructor_args: Constructor arguments; strings are coerced to the ABI types
            value: Wei to send with the creation
            verify: Submit the source to the block explorer after deploying
            timeout: Seconds to wait for the deployment receipt
            cancel: Token aborting receipt and verification polling

        Returns:
            DeploymentOutcome; a verification failure yields DEPLOYED_UNVERIFIED

        Raises:
            ConfigError, CompileError, EncodingError, SimulationError, BroadcastError
        """
        network = resolve(self.settings, network_name, require_explorer=verify)
        artifact = self.builder.build(sources, contract_name)
        args = coerce_arguments(artifact.constructor_abi(), constructor_args)
        return self.deploy_artifact(artifact, args, network, value, verify, timeout, cancel)

    def deploy_artifact(
        self,
        artifact: ArtifactRef,
        constructor_args: Sequence[Any],
        network: NetworkConfig,
        value: int = 0,
        verify: bool = False,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> DeploymentOutcome:
        """Broadcast an already built artifact; the tail of run()."""
        request = DeploymentRequest(artifact, tuple(constructor_args), value)
        receipt = self.broadcaster.deploy(request, network, timeout=timeout, cancel=cancel)
        logger.info(
            "%s deployed at %s (block %d, gas %d)",
            artifact.contract_name,
            receipt.contract_address,
            receipt.block_number,
            receipt.gas_used,
        )

        path = self.record(artifact, receipt, network, constructor_args)

        outcome = DeploymentOutcome(
            network=network.name,
            artifact=artifact,
            receipt=receipt,
            status=DeploymentStatus.DEPLOYED,
            record_path=str(path) if path else None,
        )
        if not verify:
            return outcome

        try:
            outcome.verification = self.verifier.verify(
                receipt.contract_address, artifact, constructor_args, network, cancel=cancel
            )
            outcome.status = DeploymentStatus.VERIFIED
        except VerificationError as e:
            # The contract is on chain regardless
            logger.warning("%s deployed but not verified: %s", artifact.contract_name, e)
            outcome.status = DeploymentStatus.DEPLOYED_UNVERIFIED
            outcome.verification = e.job
            outcome.verification_error = e
        return outcome

    def record(
        self,
        artifact: ArtifactRef,
        receipt: TransactionReceipt,
        network: NetworkConfig,
        constructor_args: Sequence[Any],
    ) -> Optional[Path]:
        """
        Write the deployment record for a mined deployment.

        The contract exists on chain whether or not the record can be
        written, so a filesystem failure is logged with the transaction hash
        and address instead of raised.

        Returns:
            Path of the record, or None if it could not be written
        """
        try:
            path = self.registry.record(
                artifact, receipt, network.name, network.chain_id, constructor_args
            )
        except OSError as e:
            logger.warning(
                "Could not write deployment record for %s at %s (tx %s): %s",
                artifact.contract_name,
                receipt.contract_address,
                receipt.tx_hash,
                e,
            )
            return None
        logger.debug("Deployment record written to %s", path)
        return path

    def verify_recorded(
        self,
        sources: SourcePaths,
        contract_name: str,
        network_name: str,
        cancel: Optional[CancelToken] = None,
    ) -> VerificationJob:
        """
        Verify a contract that was deployed earlier, using its deployment record.

        Sources are rebuilt (normally an artifact cache hit) to recover the
        compiler input.
        """
        network = resolve(self.settings, network_name, require_explorer=True)
        record = self.registry.deployment(contract_name, network_name)
        artifact = self.builder.build(sources, contract_name)
        args = coerce_arguments(artifact.constructor_abi(), record.constructor_args or [])
        return self.verifier.verify(record.address, artifact, args, network, cancel=cancel)

    def deploy_many(
        self,
        requests: Sequence[DeploymentRequest],
        network_name: str,
        max_workers: int = 4,
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[Union[TransactionReceipt, DeploymentError]]:
        """
        Deploy independent contracts concurrently on one network.

        Nonces are allocated by the shared broadcaster, so requests from the
        same signer never collide.

        Returns:
            One receipt or DeploymentError per request, in input order

        Raises:
            ConfigError: If the network cannot be resolved (before any deployment)
        """
        network = resolve(self.settings, network_name)

        def deploy_one(request: DeploymentRequest) -> Union[TransactionReceipt, DeploymentError]:
            try:
                receipt = self.broadcaster.deploy(request, network, timeout=timeout, cancel=cancel)
            except DeploymentError as e:
                logger.error("Deployment of %s failed: %s", request.artifact.contract_name, e)
                return e
            self.record(request.artifact, receipt, network, request.constructor_args)
            return receipt

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(deploy_one, requests))
