"""Integration tests for source verification against a mocked Etherscan API."""

import dataclasses
import threading
from urllib.parse import parse_qs, urlparse

import pytest
import responses
from eth_abi import encode

from chaindeploy.constants import ETHERSCAN_V2_API_URL
from chaindeploy.exceptions import (
    ConfigError,
    ConfigErrorKind,
    VerificationError,
    VerificationErrorKind,
)
from chaindeploy.polling import CancelToken
from chaindeploy.types import ArtifactRef, NetworkConfig, VerificationState
from chaindeploy.verifier import Verifier

from conftest import COMPILER_COMMIT, EXPLORER_API_KEY

ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
GUID = "ezq878u486pzijkvvmerl6a9mzwhv6sefgvqi5tkwceejc7tvn"

SUBMITTED = {"status": "1", "message": "OK", "result": GUID}
PENDING = {"status": "0", "message": "NOTOK", "result": "Pending in queue"}
PASSED = {"status": "1", "message": "OK", "result": "Pass - Verified"}
FAILED = {"status": "0", "message": "NOTOK", "result": "Fail - Unable to verify"}
NOT_INDEXED = {
    "status": "0",
    "message": "NOTOK",
    "result": f"Unable to locate ContractCode at {ADDRESS}",
}


def explorer_calls(rsps: responses.RequestsMock, method: str):
    return [c for c in rsps.calls if c.request.method == method]


class TestSubmit:
    """Test Verifier.submit."""

    def test_payload(
        self, verifier: Verifier, rsps, network: NetworkConfig, token_artifact: ArtifactRef
    ):
        """Test that the submission carries standard JSON input and encoded arguments."""
        rsps.add(responses.POST, ETHERSCAN_V2_API_URL, json=SUBMITTED)

        job = verifier.submit(ADDRESS, token_artifact, [1000], network)

        assert job.guid == GUID
        assert job.state is VerificationState.SUBMITTED
        assert job.source_ref == "contracts/MyToken.sol:MyToken"

        [call] = explorer_calls(rsps, "POST")
        assert parse_qs(urlparse(call.request.url).query)["chainid"] == ["11155111"]
        form = {k: v[0] for k, v in parse_qs(call.request.body).items()}
        assert form["apikey"] == EXPLORER_API_KEY
        assert form["action"] == "verifysourcecode"
        assert form["contractaddress"] == ADDRESS
        assert form["codeformat"] == "solidity-standard-json-input"
        assert form["contractname"] == "contracts/MyToken.sol:MyToken"
        assert form["compilerversion"] == f"v0.8.24+commit.{COMPILER_COMMIT}"
        assert form["constructorArguements"] == encode(["uint256"], [1000]).hex()
        assert '"language": "Solidity"' in form["sourceCode"]

    def test_retries_until_indexed(
        self, verifier: Verifier, rsps, network: NetworkConfig, token_artifact: ArtifactRef
    ):
        rsps.add(responses.POST, ETHERSCAN_V2_API_URL, json=NOT_INDEXED)
        rsps.add(responses.POST, ETHERSCAN_V2_API_URL, json=NOT_INDEXED)
        rsps.add(responses.POST, ETHERSCAN_V2_API_URL, json=SUBMITTED)

        job = verifier.submit(ADDRESS, token_artifact, [1000], network)

        assert job.guid == GUID
        assert len(explorer_calls(rsps, "POST")) == 3

    def test_never_indexed(
        self, verifier: Verifier, rsps, network: NetworkConfig, token_artifact: ArtifactRef
    ):
        rsps.add(responses.POST, ETHERSCAN_V2_API_URL, json=NOT_INDEXED)

        with pytest.raises(VerificationError) as exc_info:
            verifier.submit(ADDRESS, token_artifact, [1000], network)

        assert exc_info.value.kind is VerificationErrorKind.TIMED_OUT
        assert len(explorer_calls(rsps, "POST")) == verifier.max_attempts

    def test_rejected_submission(
        self, verifier: Verifier, rsps, network: NetworkConfig, token_artifact: ArtifactRef
    ):
        rsps.add(
            responses.POST,
            ETHERSCAN_V2_API_URL,
            json={"status": "0", "message": "NOTOK", "result": "Invalid API Key"},
        )

        with pytest.raises(VerificationError) as exc_info:
            verifier.submit(ADDRESS, token_artifact, [1000], network)

        assert exc_info.value.kind is VerificationErrorKind.REJECTED
        assert "Invalid API Key" in str(exc_info.value)
        assert len(explorer_calls(rsps, "POST")) == 1

    def test_missing_api_key(
        self, verifier: Verifier, rsps, network: NetworkConfig, token_artifact: ArtifactRef
    ):
        network = dataclasses.replace(network, explorer_api_key=None)

        with pytest.raises(ConfigError) as exc_info:
            verifier.submit(ADDRESS, token_artifact, [1000], network)

        assert exc_info.value.kind is ConfigErrorKind.MISSING_EXPLORER_KEY
        assert len(rsps.calls) == 0

    def test_artifact_without_compiler_input(
        self, verifier: Verifier, rsps, network: NetworkConfig, token_artifact: ArtifactRef
    ):
        artifact = dataclasses.replace(token_artifact, standard_json_input=None)

        with pytest.raises(VerificationError) as exc_info:
            verifier.submit(ADDRESS, artifact, [1000], network)

        assert exc_info.value.kind is VerificationErrorKind.REJECTED
        assert len(rsps.calls) == 0


class TestVerify:
    """Test the full submit-and-wait flow."""

    def test_pending_then_pass(
        self, verifier: Verifier, rsps, network: NetworkConfig, token_artifact: ArtifactRef
    ):
        """Test that a job moves SUBMITTED -> PENDING -> VERIFIED."""
        rsps.add(responses.POST, ETHERSCAN_V2_API_URL, json=SUBMITTED)
        rsps.add(responses.GET, ETHERSCAN_V2_API_URL, json=PENDING)
        rsps.add(responses.GET, ETHERSCAN_V2_API_URL, json=PENDING)
        rsps.add(responses.GET, ETHERSCAN_V2_API_URL, json=PASSED)

        job = verifier.verify(ADDRESS, token_artifact, [1000], network)

        assert job.state is VerificationState.VERIFIED
        assert job.reason == "Pass - Verified"
        assert job.attempts == 3

        checks = explorer_calls(rsps, "GET")
        query = parse_qs(urlparse(checks[0].request.url).query)
        assert query["action"] == ["checkverifystatus"]
        assert query["guid"] == [GUID]
        assert query["chainid"] == ["11155111"]

    def test_already_verified_skips_polling(
        self, verifier: Verifier, rsps, network: NetworkConfig, token_artifact: ArtifactRef
    ):
        rsps.add(
            responses.POST,
            ETHERSCAN_V2_API_URL,
            json={"status": "0", "message": "NOTOK", "result": "Contract source code already verified"},
        )

        job = verifier.verify(ADDRESS, token_artifact, [1000], network)

        assert job.state is VerificationState.VERIFIED
        assert explorer_calls(rsps, "GET") == []

    def test_explorer_rejects_source(
        self, verifier: Verifier, rsps, network: NetworkConfig, token_artifact: ArtifactRef
    ):
        rsps.add(responses.POST, ETHERSCAN_V2_API_URL, json=SUBMITTED)
        rsps.add(responses.GET, ETHERSCAN_V2_API_URL, json=PENDING)
        rsps.add(responses.GET, ETHERSCAN_V2_API_URL, json=FAILED)

        with pytest.raises(VerificationError) as exc_info:
            verifier.verify(ADDRESS, token_artifact, [1000], network)

        error = exc_info.value
        assert error.kind is VerificationErrorKind.REJECTED
        assert error.job.state is VerificationState.FAILED
        assert error.job.reason == "Fail - Unable to verify"

    def test_timed_out_while_pending(
        self, verifier: Verifier, rsps, network: NetworkConfig, token_artifact: ArtifactRef
    ):
        rsps.add(responses.POST, ETHERSCAN_V2_API_URL, json=SUBMITTED)
        rsps.add(responses.GET, ETHERSCAN_V2_API_URL, json=PENDING)

        with pytest.raises(VerificationError) as exc_info:
            verifier.verify(ADDRESS, token_artifact, [1000], network)

        error = exc_info.value
        assert error.kind is VerificationErrorKind.TIMED_OUT
        assert error.job.state is VerificationState.PENDING
        assert error.job.attempts == verifier.max_attempts

    def test_status_check_errors_are_retried(
        self, verifier: Verifier, rsps, network: NetworkConfig, token_artifact: ArtifactRef
    ):
        rsps.add(responses.POST, ETHERSCAN_V2_API_URL, json=SUBMITTED)
        rsps.add(responses.GET, ETHERSCAN_V2_API_URL, body="upstream error", status=502)
        rsps.add(responses.GET, ETHERSCAN_V2_API_URL, json=PASSED)

        job = verifier.verify(ADDRESS, token_artifact, [1000], network)

        assert job.state is VerificationState.VERIFIED
        assert job.attempts == 2

    def test_rate_limited_status_is_not_a_verdict(
        self, verifier: Verifier, rsps, network: NetworkConfig, token_artifact: ArtifactRef
    ):
        """Test that explorer trouble during polling is retried rather than failing the job."""
        rsps.add(responses.POST, ETHERSCAN_V2_API_URL, json=SUBMITTED)
        rsps.add(
            responses.GET,
            ETHERSCAN_V2_API_URL,
            json={"status": "0", "message": "NOTOK", "result": "Max rate limit reached"},
        )
        rsps.add(responses.GET, ETHERSCAN_V2_API_URL, json=PASSED)

        job = verifier.verify(ADDRESS, token_artifact, [1000], network)

        assert job.state is VerificationState.VERIFIED
        assert job.attempts == 2

    def test_unexplained_answers_time_out(
        self, verifier: Verifier, rsps, network: NetworkConfig, token_artifact: ArtifactRef
    ):
        rsps.add(responses.POST, ETHERSCAN_V2_API_URL, json=SUBMITTED)
        rsps.add(
            responses.GET,
            ETHERSCAN_V2_API_URL,
            json={"status": "0", "message": "NOTOK", "result": "Invalid API Key"},
        )

        with pytest.raises(VerificationError) as exc_info:
            verifier.verify(ADDRESS, token_artifact, [1000], network)

        assert exc_info.value.kind is VerificationErrorKind.TIMED_OUT
        assert exc_info.value.job.state is not VerificationState.FAILED

    def test_cancelled(self, rsps, network: NetworkConfig, token_artifact: ArtifactRef):
        verifier = Verifier(poll_interval=30.0, max_attempts=10)
        rsps.add(responses.POST, ETHERSCAN_V2_API_URL, json=SUBMITTED)
        rsps.add(responses.GET, ETHERSCAN_V2_API_URL, json=PENDING)
        token = CancelToken()
        timer = threading.Timer(0.05, token.cancel)
        timer.start()
        try:
            with pytest.raises(VerificationError) as exc_info:
                verifier.verify(ADDRESS, token_artifact, [1000], network, cancel=token)
        finally:
            timer.cancel()

        assert exc_info.value.kind is VerificationErrorKind.CANCELLED
