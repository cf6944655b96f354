"""
Theurgy Tasks - Deploy-then-interact flows.

Each task deploys one contract, records it as the session's active handle,
and drives it through shielded sends and queries:

- hello:       message contract, setMessage / getMessage
- erc20:       ERC-20 token, mint and transfer
- nft:         ERC-721 token, safeMint
- perc20:      private ERC-20, mint, transfer, private balance query
- private-nft: ERC-721 whose views are restricted to the owner, safeMint
- proxy:       upgradeable message contract behind a transparent proxy

Task functions take a Session and raise ArcanumError subclasses; the click
commands wrap them with prompting and failure rendering.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import click

from ..anamnesis.registry import ContractHandleRegistry
from ..errors import EncodingMismatch
from ..pneuma.abi import ContractInterface
from ..pneuma.shielded import QueryResult
from ..utils import is_address, sanitize_name, to_checksum_address
from .common import (
    Session,
    echo_outcome,
    guarded,
    run_with_retry,
    session_from_options,
    session_options,
)

DEFAULT_MESSAGE = "Hello Swisstronik!!"
DEFAULT_NEW_MESSAGE = "Hello Swisstronik from Arcanum!!"
ONE_TOKEN = 10**18
FIRST_TOKEN_ID = 1

MESSAGE_CONTRACT = "Swisstronik"
UPGRADEABLE_MESSAGE_CONTRACT = "SwisstronikUpgradeable"
ERC20_CONTRACT = "TestToken"
NFT_CONTRACT = "TestNFT"
PERC20_CONTRACT = "PERC20Sample"
PRIVATE_NFT_CONTRACT = "PrivateNFT"
PROXY_CONTRACT = "TransparentUpgradeableProxy"


def _send(session: Session, interface: ContractInterface, function_name: str, args: Optional[list[Any]] = None, label: Optional[str] = None):
    handle = session.resolve_handle(interface)
    outcome = run_with_retry(
        lambda: session.client.send_function(session.signer, handle, function_name, args),
        is_send=True,
    )
    echo_outcome(label or function_name, outcome)
    return outcome


def _query(session: Session, interface: ContractInterface, function_name: str, args: Optional[list[Any]] = None) -> QueryResult:
    handle = session.resolve_handle(interface)
    return run_with_retry(
        lambda: session.client.query_function(session.signer, handle, function_name, args)
    )


def _announce_deploy(name: str, address: str) -> None:
    click.secho(f"  {name} deployed to {address}", fg="green")


def validate_recipient(value: str) -> str:
    if not is_address(value):
        raise EncodingMismatch(f"Recipient is not a 20-byte hex address: {value!r}", phase="encoding")
    return to_checksum_address(value)


def validate_token_name(value: str, label: str) -> str:
    clean = sanitize_name(value)
    if not clean:
        raise click.BadParameter(f"{label} must contain letters, digits or underscores")
    return clean


# ---------------------------------------------------------------------------
# Task flows
# ---------------------------------------------------------------------------


def run_hello(session: Session, message: str = DEFAULT_MESSAGE, new_message: str = DEFAULT_NEW_MESSAGE) -> QueryResult:
    artifact = session.artifact(MESSAGE_CONTRACT)
    handle = session.deploy(artifact, [message])
    _announce_deploy(MESSAGE_CONTRACT, handle.address)

    _send(session, artifact.interface, "setMessage", [new_message])
    result = _query(session, artifact.interface, "getMessage")
    click.echo(f"  Decoded response: {result.value}")
    return result


def run_erc20(session: Session, name: str, symbol: str, recipient: str) -> None:
    recipient = validate_recipient(recipient)
    artifact = session.artifact(ERC20_CONTRACT)
    handle = session.deploy(artifact, [name, symbol])
    _announce_deploy(ERC20_CONTRACT, handle.address)

    _send(session, artifact.interface, "mint100tokens", label="Mint 100 tokens")
    _send(session, artifact.interface, "transfer", [recipient, ONE_TOKEN], label=f"Transfer 1 {symbol}")


def run_nft(session: Session, name: str, symbol: str) -> None:
    artifact = session.artifact(NFT_CONTRACT)
    handle = session.deploy(artifact, [name, symbol])
    _announce_deploy(NFT_CONTRACT, handle.address)

    _send(session, artifact.interface, "safeMint", [session.signer.address, FIRST_TOKEN_ID], label="Mint NFT #1")


def run_perc20(session: Session, name: str, symbol: str, recipient: str) -> int:
    recipient = validate_recipient(recipient)
    artifact = session.artifact(PERC20_CONTRACT)
    handle = session.deploy(artifact, [name, symbol])
    _announce_deploy(PERC20_CONTRACT, handle.address)

    _send(session, artifact.interface, "mint100tokens", label="Mint 100 tokens")
    _send(session, artifact.interface, "transfer", [recipient, ONE_TOKEN], label=f"Transfer 1 {symbol}")

    # balanceOf only answers to the account owner, so the query is sent from the signer.
    result = _query(session, artifact.interface, "balanceOf", [session.signer.address])
    click.echo(f"  Private balance: {result.value / ONE_TOKEN:,.4f} {symbol}")
    return result.value


def run_private_nft(session: Session, name: str, symbol: str) -> None:
    artifact = session.artifact(PRIVATE_NFT_CONTRACT)
    handle = session.deploy(artifact, [name, symbol, session.signer.address])
    _announce_deploy(PRIVATE_NFT_CONTRACT, handle.address)

    _send(session, artifact.interface, "safeMint", [session.signer.address, FIRST_TOKEN_ID], label="Mint private NFT #1")


def run_proxy(session: Session, message: str = DEFAULT_MESSAGE, new_message: str = DEFAULT_NEW_MESSAGE) -> QueryResult:
    implementation = session.artifact(UPGRADEABLE_MESSAGE_CONTRACT)
    proxy = session.artifact(PROXY_CONTRACT)

    logic = session.deploy(implementation, store=False)
    _announce_deploy(UPGRADEABLE_MESSAGE_CONTRACT, logic.address)

    init_data = implementation.interface.encode_call("initialize", [message])
    proxy_handle = session.deploy(proxy, [logic.address, session.signer.address, init_data], store=False)
    # Interactions go through the proxy address with the implementation's interface.
    session.registry.store(proxy_handle.bind(implementation.interface))
    _announce_deploy(PROXY_CONTRACT, proxy_handle.address)

    _send(session, implementation.interface, "setMessage", [new_message])
    result = _query(session, implementation.interface, "getMessage")
    click.echo(f"  Decoded response: {result.value}")
    return result


def run_cleanup(session_dir: Path) -> None:
    ContractHandleRegistry(session_dir).destroy()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@click.group()
def task() -> None:
    """Deploy a contract and drive it with shielded calls."""


@task.command("hello")
@session_options
@click.option("--message", default=DEFAULT_MESSAGE, show_default=True, help="Constructor message")
@click.option("--new-message", default=DEFAULT_NEW_MESSAGE, show_default=True, help="Message to set")
@guarded
def hello_cmd(rpc_url, session_dir, artifacts, timeout, message: str, new_message: str) -> None:
    """Deploy the message contract, set and read the message."""
    click.echo("=== Task: message contract ===")
    session = session_from_options(rpc_url, session_dir, artifacts, timeout)
    run_hello(session, message, new_message)
    click.secho("Task completed successfully.", fg="green")


@task.command("erc20")
@session_options
@click.option("--name", prompt="Token name", help="Token name")
@click.option("--symbol", prompt="Token symbol", help="Token symbol")
@click.option("--recipient", prompt="Recipient address", help="Transfer recipient")
@guarded
def erc20_cmd(rpc_url, session_dir, artifacts, timeout, name: str, symbol: str, recipient: str) -> None:
    """Deploy an ERC-20, mint 100 tokens and transfer one."""
    click.echo("=== Task: ERC-20 token ===")
    name = validate_token_name(name, "Token name")
    symbol = validate_token_name(symbol, "Token symbol")
    session = session_from_options(rpc_url, session_dir, artifacts, timeout)
    run_erc20(session, name, symbol, recipient)
    click.secho("Task completed successfully.", fg="green")


@task.command("nft")
@session_options
@click.option("--name", prompt="NFT name", help="Collection name")
@click.option("--symbol", prompt="NFT symbol", help="Collection symbol")
@guarded
def nft_cmd(rpc_url, session_dir, artifacts, timeout, name: str, symbol: str) -> None:
    """Deploy an ERC-721 and mint token #1."""
    click.echo("=== Task: NFT ===")
    name = validate_token_name(name, "NFT name")
    symbol = validate_token_name(symbol, "NFT symbol")
    session = session_from_options(rpc_url, session_dir, artifacts, timeout)
    run_nft(session, name, symbol)
    click.secho("Task completed successfully.", fg="green")


@task.command("perc20")
@session_options
@click.option("--name", prompt="Token name", help="Token name")
@click.option("--symbol", prompt="Token symbol", help="Token symbol")
@click.option("--recipient", prompt="Recipient address", help="Transfer recipient")
@guarded
def perc20_cmd(rpc_url, session_dir, artifacts, timeout, name: str, symbol: str, recipient: str) -> None:
    """Deploy a private ERC-20, mint, transfer and read the private balance."""
    click.echo("=== Task: PERC20 token ===")
    name = validate_token_name(name, "Token name")
    symbol = validate_token_name(symbol, "Token symbol")
    session = session_from_options(rpc_url, session_dir, artifacts, timeout)
    run_perc20(session, name, symbol, recipient)
    click.secho("Task completed successfully.", fg="green")


@task.command("private-nft")
@session_options
@click.option("--name", prompt="NFT name", help="Collection name")
@click.option("--symbol", prompt="NFT symbol", help="Collection symbol")
@guarded
def private_nft_cmd(rpc_url, session_dir, artifacts, timeout, name: str, symbol: str) -> None:
    """Deploy an owner-only ERC-721 and mint token #1."""
    click.echo("=== Task: private NFT ===")
    name = validate_token_name(name, "NFT name")
    symbol = validate_token_name(symbol, "NFT symbol")
    session = session_from_options(rpc_url, session_dir, artifacts, timeout)
    run_private_nft(session, name, symbol)
    click.secho("Task completed successfully.", fg="green")


@task.command("proxy")
@session_options
@click.option("--message", default=DEFAULT_MESSAGE, show_default=True, help="Initializer message")
@click.option("--new-message", default=DEFAULT_NEW_MESSAGE, show_default=True, help="Message to set")
@guarded
def proxy_cmd(rpc_url, session_dir, artifacts, timeout, message: str, new_message: str) -> None:
    """Deploy an upgradeable message contract behind a transparent proxy."""
    click.echo("=== Task: upgradeable contract ===")
    session = session_from_options(rpc_url, session_dir, artifacts, timeout)
    run_proxy(session, message, new_message)
    click.secho("Task completed successfully.", fg="green")
