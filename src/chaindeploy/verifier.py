"""Source verification against Etherscan-compatible block explorers."""

import itertools
import json
import logging
from typing import Any, Dict, Optional, Sequence

import requests

from .abi import encode_arguments
from .constants import DEFAULT_VERIFY_INTERVAL, DEFAULT_VERIFY_MAX_ATTEMPTS
from .exceptions import (
    ConfigError,
    ConfigErrorKind,
    VerificationError,
    VerificationErrorKind,
)
from .polling import CancelToken, PollCancelledError, PollTimeoutError, poll_until
from .types import ArtifactRef, NetworkConfig, VerificationJob, VerificationState

logger = logging.getLogger(__name__)

EXPLORER_TIMEOUT = 30

# Explorer answers are free text; these fragments are stable across Etherscan forks
_NOT_INDEXED = "unable to locate contractcode"
_ALREADY_VERIFIED = "already verified"
_PENDING = "pending"
_PASS = "pass"
_FAIL = "fail"


class Verifier:
    """Submits contract sources to a block explorer and tracks the job."""

    def __init__(
        self,
        poll_interval: float = DEFAULT_VERIFY_INTERVAL,
        max_attempts: int = DEFAULT_VERIFY_MAX_ATTEMPTS,
        session: Optional[requests.Session] = None,
    ):
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._session = session or requests.Session()

    def submit(
        self,
        contract_address: str,
        artifact: ArtifactRef,
        constructor_args: Sequence[Any],
        network: NetworkConfig,
        cancel: Optional[CancelToken] = None,
    ) -> VerificationJob:
        """
        Submit a deployed contract's source for verification.

        If the explorer has not indexed the contract's bytecode yet, the
        submission is repeated every ``poll_interval`` seconds, at most
        ``max_attempts`` times.

        Returns:
            VerificationJob in state SUBMITTED (VERIFIED if the explorer
            already knows the source)

        Raises:
            ConfigError: If the network has no explorer API access
            VerificationError: REJECTED, TIMED_OUT or CANCELLED
        """
        if not contract_address:
            raise ValueError("Verification requires a deployed contract address")
        if not (network.explorer_api_url and network.explorer_api_key):
            raise ConfigError(
                ConfigErrorKind.MISSING_EXPLORER_KEY,
                f"No explorer API access configured for '{network.name}'",
                network.name,
            )
        if artifact.standard_json_input is None or artifact.compiler_version is None:
            raise VerificationError(
                VerificationErrorKind.REJECTED,
                f"{artifact.contract_name} carries no compiler input to verify",
            )

        payload = {
            "apikey": network.explorer_api_key,
            "module": "contract",
            "action": "verifysourcecode",
            "contractaddress": contract_address,
            "sourceCode": json.dumps(artifact.standard_json_input),
            "codeformat": "solidity-standard-json-input",
            "contractname": artifact.fully_qualified_name,
            "compilerversion": f"v{artifact.compiler_version}",
            # Etherscan's spelling
            "constructorArguements": encode_arguments(
                artifact.constructor_abi(), constructor_args
            ).hex(),
        }

        def attempt() -> Optional[VerificationJob]:
            answer = self._request("post", network, data=payload)
            result = str(answer.get("result", ""))
            if answer.get("status") == "1":
                logger.info("Verification of %s submitted (guid %s)", contract_address, result)
                return VerificationJob(contract_address, artifact.fully_qualified_name, guid=result)
            lowered = result.lower()
            if _ALREADY_VERIFIED in lowered:
                logger.info("%s is already verified", contract_address)
                return VerificationJob(
                    contract_address,
                    artifact.fully_qualified_name,
                    guid="",
                    state=VerificationState.VERIFIED,
                    reason=result,
                )
            if _NOT_INDEXED in lowered:
                logger.info("Explorer has not indexed %s yet", contract_address)
                return None
            raise VerificationError(
                VerificationErrorKind.REJECTED, f"Verification submission rejected: {result}"
            )

        try:
            return poll_until(
                attempt,
                itertools.repeat(self.poll_interval),
                max_attempts=self.max_attempts,
                cancel=cancel,
            )
        except PollTimeoutError as e:
            raise VerificationError(
                VerificationErrorKind.TIMED_OUT,
                f"Explorer did not index {contract_address} after {e.attempts} attempts",
            ) from None
        except PollCancelledError:
            raise VerificationError(
                VerificationErrorKind.CANCELLED, "Verification submission cancelled"
            ) from None

    def wait(
        self,
        job: VerificationJob,
        network: NetworkConfig,
        cancel: Optional[CancelToken] = None,
    ) -> VerificationJob:
        """
        Poll a submitted job until the explorer reaches a verdict.

        Returns:
            The job, in state VERIFIED

        Raises:
            VerificationError: REJECTED (job FAILED), TIMED_OUT after
                               ``max_attempts`` polls, or CANCELLED
        """
        if job.is_terminal:
            return self._finish(job)

        def check() -> Optional[VerificationJob]:
            job.attempts += 1
            try:
                answer = self._request(
                    "get",
                    network,
                    params={
                        "module": "contract",
                        "action": "checkverifystatus",
                        "guid": job.guid,
                        "apikey": network.explorer_api_key,
                    },
                )
            except VerificationError as e:
                logger.warning("Verification status check failed: %s", e)
                return None

            result = str(answer.get("result", ""))
            lowered = result.lower()
            if job.state is VerificationState.SUBMITTED:
                job.advance(VerificationState.PENDING)
            if _PENDING in lowered:
                logger.debug("Verification %s pending (%d/%d)", job.guid, job.attempts, self.max_attempts)
                return None
            if answer.get("status") == "1" or lowered.startswith(_PASS) or _ALREADY_VERIFIED in lowered:
                job.advance(VerificationState.VERIFIED, result)
                return job
            if lowered.startswith(_FAIL):
                job.advance(VerificationState.FAILED, result)
                return job
            # Rate limits and other explorer trouble are not a verdict
            logger.warning("Verification status check for %s failed: %s", job.guid, result)
            return None

        try:
            poll_until(
                check,
                itertools.repeat(self.poll_interval),
                max_attempts=self.max_attempts,
                cancel=cancel,
            )
        except PollTimeoutError:
            raise VerificationError(
                VerificationErrorKind.TIMED_OUT,
                f"Verification of {job.contract_address} still pending after {job.attempts} polls",
                job,
            ) from None
        except PollCancelledError:
            raise VerificationError(
                VerificationErrorKind.CANCELLED, "Verification polling cancelled", job
            ) from None

        return self._finish(job)

    def verify(
        self,
        contract_address: str,
        artifact: ArtifactRef,
        constructor_args: Sequence[Any],
        network: NetworkConfig,
        cancel: Optional[CancelToken] = None,
    ) -> VerificationJob:
        """Submit and wait; see submit() and wait()."""
        job = self.submit(contract_address, artifact, constructor_args, network, cancel=cancel)
        return self.wait(job, network, cancel=cancel)

    @staticmethod
    def _finish(job: VerificationJob) -> VerificationJob:
        if job.state is VerificationState.FAILED:
            raise VerificationError(
                VerificationErrorKind.REJECTED,
                f"Explorer rejected verification: {job.reason}",
                job,
            )
        logger.info("Verified %s", job.contract_address)
        return job

    def _request(self, method: str, network: NetworkConfig, **kwargs) -> Dict[str, Any]:
        params = {"chainid": network.chain_id, **kwargs.pop("params", {})}
        try:
            response = self._session.request(
                method,
                network.explorer_api_url,
                params=params,
                timeout=EXPLORER_TIMEOUT,
                **kwargs,
            )
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            raise VerificationError(
                VerificationErrorKind.REJECTED, f"Explorer request failed: {e}"
            ) from e
