"""
Theurgy Interact - Generic deploy / send / query against the active handle.

``deploy`` makes a contract the session's active handle; ``send`` and
``query`` always resolve their destination through the registry, so they
operate on the address of the most recent successful deploy.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Optional

import click

from ..anamnesis.registry import ContractHandleRegistry, default_session_dir
from ..errors import NoActiveContract
from .common import (
    echo_outcome,
    guarded,
    run_with_retry,
    session_from_options,
    session_options,
)


def _parse_args(args_json: str) -> list[Any]:
    try:
        args = json.loads(args_json)
        if not isinstance(args, list):
            raise ValueError("Args must be a JSON array")
    except (json.JSONDecodeError, ValueError) as exc:
        click.secho(f"ERROR: Invalid args: {exc}", fg="red")
        sys.exit(1)
    return args


@click.command()
@session_options
@click.option("--contract", "contract_name", required=True, help="Artifact name of the contract")
@click.option("--args", "args_json", default="[]", help="Constructor args as JSON array")
@guarded
def deploy(rpc_url, session_dir, artifacts, timeout, contract_name: str, args_json: str) -> None:
    """Deploy a contract and make it the active handle."""
    args = _parse_args(args_json)
    session = session_from_options(rpc_url, session_dir, artifacts, timeout)
    artifact = session.artifact(contract_name)

    click.echo(f"  Deployer: {session.signer.address}")
    click.echo(f"  Contract: {contract_name}")
    handle = session.deploy(artifact, args)
    click.secho(f"SUCCESS: {contract_name} deployed to {handle.address}", fg="green")


@click.command()
@session_options
@click.option("--contract", "contract_name", required=True, help="Artifact name (for the ABI)")
@click.option("--function", "func_name", required=True, help="Function name to call")
@click.option("--args", "args_json", default="[]", help="Function args as JSON array")
@click.option("--value", default=0, type=int, help="Native value in wei")
@guarded
def send(rpc_url, session_dir, artifacts, timeout, contract_name: str, func_name: str, args_json: str, value: int) -> None:
    """Send a shielded transaction to the active contract."""
    args = _parse_args(args_json)
    session = session_from_options(rpc_url, session_dir, artifacts, timeout)
    interface = session.artifact(contract_name).interface
    if interface.function_signature(func_name, len(args)).is_read_only:
        click.secho(f"  Note: {func_name} is read-only; 'arcanum query' costs no gas", fg="yellow")
    handle = session.resolve_handle(interface)

    click.echo(f"  Sender: {session.signer.address}")
    click.echo(f"  Target: {handle.address}")
    click.echo(f"  Function: {func_name}")
    if value > 0:
        click.echo(f"  Value: {value} wei")

    outcome = run_with_retry(
        lambda: session.client.send_function(session.signer, handle, func_name, args, value),
        is_send=True,
    )
    echo_outcome(func_name, outcome)


@click.command()
@session_options
@click.option("--contract", "contract_name", required=True, help="Artifact name (for the ABI)")
@click.option("--function", "func_name", required=True, help="Function name to call")
@click.option("--args", "args_json", default="[]", help="Function args as JSON array")
@guarded
def query(rpc_url, session_dir, artifacts, timeout, contract_name: str, func_name: str, args_json: str) -> None:
    """Run a shielded read-only call against the active contract."""
    args = _parse_args(args_json)
    session = session_from_options(rpc_url, session_dir, artifacts, timeout)
    interface = session.artifact(contract_name).interface
    handle = session.resolve_handle(interface)

    result = run_with_retry(
        lambda: session.client.query_function(session.signer, handle, func_name, args)
    )
    click.echo(f"  Raw (decrypted): 0x{result.raw.hex()}")
    click.echo(f"  Decoded response: {result.value}")


@click.command()
@click.option(
    "--session-dir",
    envvar="ARCANUM_SESSION_DIR",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding the active contract handle",
)
def handle(session_dir: Optional[Path]) -> None:
    """Show the active contract handle."""
    registry = ContractHandleRegistry(session_dir or default_session_dir())
    try:
        active = registry.load()
    except NoActiveContract:
        click.echo("No active contract.")
        sys.exit(1)
    click.echo(f"Active contract: {active.address}")
