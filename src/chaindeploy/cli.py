# cli.py
from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from chaindeploy.config import Settings, resolve
from chaindeploy.exceptions import (
    BroadcastError,
    CompileError,
    ConfigError,
    DeploymentError,
    EncodingError,
    SimulationError,
    VerificationError,
)
from chaindeploy.abi import coerce_arguments
from chaindeploy.orchestrator import Orchestrator
from chaindeploy.types import DeploymentStatus

EXIT_CONFIG = 2
EXIT_COMPILE = 3
EXIT_SIMULATION = 4
EXIT_BROADCAST = 5
EXIT_VERIFICATION = 6

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def exit_code_for(error: Exception) -> int:
    """Map an orchestrator error to the process exit code."""
    if isinstance(error, ConfigError):
        return EXIT_CONFIG
    if isinstance(error, CompileError):
        return EXIT_COMPILE
    if isinstance(error, (EncodingError, SimulationError)):
        return EXIT_SIMULATION
    if isinstance(error, BroadcastError):
        return EXIT_BROADCAST
    if isinstance(error, VerificationError):
        return EXIT_VERIFICATION
    return 1


def fail(error: Exception) -> None:
    """Report an error on stderr and exit with its code."""
    click.secho(f"Error: {error}", fg="red", err=True)
    if isinstance(error, BroadcastError):
        click.echo(f"Transaction hash: {error.tx_hash}", err=True)
    if isinstance(error, CompileError):
        for diagnostic in error.diagnostics:
            click.echo(f"  {diagnostic}", err=True)
    sys.exit(exit_code_for(error))


def get_orchestrator(ctx: click.Context) -> Orchestrator:
    obj = ctx.ensure_object(dict)
    if "orchestrator" not in obj:
        obj["orchestrator"] = Orchestrator(obj["settings"])
    return obj["orchestrator"]


def default_sources(contract: str, sources: tuple[str, ...]) -> list[str]:
    return list(sources) or [str(Path("contracts") / f"{contract}.sol")]


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug logging",
)
@click.option(
    "--env-file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Environment file to load (defaults to the nearest .env)",
)
@click.pass_context
def cli(ctx, debug, env_file):
    """chaindeploy: compile, deploy and verify smart contracts."""
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO, format=LOG_FORMAT)
    obj = ctx.ensure_object(dict)
    if "settings" not in obj and "orchestrator" not in obj:
        # Configuration is read once, here
        try:
            obj["settings"] = Settings.from_env(dotenv_path=env_file)
        except ConfigError as e:
            fail(e)


@cli.command("compile")
@click.argument("sources", nargs=-1, required=True)
@click.option("--contract", default=None, help="Only report this contract")
@click.pass_context
def compile_sources(ctx, sources, contract):
    """Compile SOURCES and list the contracts they define."""
    builder = get_orchestrator(ctx).builder
    try:
        if contract:
            artifacts = {contract: builder.build(sources, contract)}
        else:
            artifacts = builder.build_all(sources)
    except DeploymentError as e:
        fail(e)

    for name, artifact in sorted(artifacts.items()):
        size = (len(artifact.bytecode) - 2) // 2
        click.echo(f"{artifact.fully_qualified_name}  {size} bytes  solc {artifact.compiler_version}")


@cli.command()
@click.option("--network", required=True, help="Network name, e.g. sepolia")
@click.option("--contract", required=True, help="Contract name to deploy")
@click.option("--source", "sources", multiple=True, help="Solidity source (repeatable)")
@click.option("--args", "args", multiple=True, help="Constructor argument (repeatable, in order)")
@click.option("--value", default=0, type=int, help="Wei to send with the deployment")
@click.option("--verify", is_flag=True, default=False, help="Verify the source on the block explorer")
@click.option("--timeout", default=None, type=float, help="Seconds to wait for the receipt")
@click.pass_context
def deploy(ctx, network, contract, sources, args, value, verify, timeout):
    """Deploy a contract and optionally verify it."""
    orchestrator = get_orchestrator(ctx)
    try:
        outcome = orchestrator.run(
            default_sources(contract, sources),
            contract,
            network,
            constructor_args=args,
            value=value,
            verify=verify,
            timeout=timeout,
        )
    except DeploymentError as e:
        fail(e)

    receipt = outcome.receipt
    click.secho(f"Deployed {contract} at {receipt.contract_address}", fg="green")
    click.echo(f"  transaction: {receipt.tx_hash}")
    click.echo(f"  block: {receipt.block_number}  gas used: {receipt.gas_used}")
    if outcome.record_path is None:
        click.secho("  deployment record NOT written; see the log", fg="yellow")

    if outcome.status is DeploymentStatus.VERIFIED:
        click.secho("  source verified", fg="green")
    elif outcome.status is DeploymentStatus.DEPLOYED_UNVERIFIED:
        click.secho("  deployed but NOT verified", fg="yellow")
        fail(outcome.verification_error)


@cli.command()
@click.option("--network", required=True, help="Network name, e.g. sepolia")
@click.option("--contract", required=True, help="Contract name")
@click.option("--function", "function_name", required=True, help="Function to call")
@click.option("--address", default=None, help="Contract address (defaults to the recorded deployment)")
@click.option("--source", "sources", multiple=True, help="Solidity source for the ABI (defaults to the record)")
@click.option("--args", "args", multiple=True, help="Function argument (repeatable, in order)")
@click.option("--value", default=0, type=int, help="Wei to send with the call")
@click.option("--timeout", default=None, type=float, help="Seconds to wait for the receipt")
@click.pass_context
def call(ctx, network, contract, function_name, address, sources, args, value, timeout):
    """Call a function of a deployed contract."""
    orchestrator = get_orchestrator(ctx)
    try:
        config = resolve(orchestrator.settings, network)
        if sources:
            abi = orchestrator.builder.build(sources, contract).abi
            if address is None:
                address = orchestrator.registry.deployment(contract, network).address
        else:
            record = orchestrator.registry.deployment(contract, network)
            abi = record.abi
            address = address or record.address

        entry = next(
            (i for i in abi if i.get("type") == "function" and i.get("name") == function_name),
            None,
        )
        if entry is None:
            raise EncodingError(f"{contract} has no function '{function_name}'")

        result = orchestrator.broadcaster.call(
            address,
            entry,
            coerce_arguments(entry, args),
            config,
            value=value,
            timeout=timeout,
            abi=abi,
        )
    except DeploymentError as e:
        fail(e)

    if result.receipt is not None:
        click.secho(f"Transaction {result.receipt.tx_hash} mined in block {result.receipt.block_number}", fg="green")
    else:
        for output in result.outputs:
            click.echo(output.hex() if isinstance(output, bytes) else str(output))


@cli.command()
@click.option("--network", required=True, help="Network name, e.g. sepolia")
@click.option("--contract", required=True, help="Contract name")
@click.option("--source", "sources", multiple=True, help="Solidity source (repeatable)")
@click.pass_context
def verify(ctx, network, contract, sources):
    """Verify the source of a previously deployed contract."""
    orchestrator = get_orchestrator(ctx)
    try:
        job = orchestrator.verify_recorded(default_sources(contract, sources), contract, network)
    except DeploymentError as e:
        fail(e)
    click.secho(f"{contract} at {job.contract_address} verified", fg="green")


@cli.command()
@click.option("--network", default=None, help="Only list this network")
@click.pass_context
def deployments(ctx, network):
    """List recorded deployments."""
    registry = get_orchestrator(ctx).registry
    networks = [network] if network else registry.networks()
    try:
        for name in networks:
            click.secho(f"{name} (chain {registry.chain_id(name)})", bold=True)
            for record in registry.all_deployments(name):
                click.echo(f"  {record.name}  {record.address}  block {record.block}")
    except DeploymentError as e:
        fail(e)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
