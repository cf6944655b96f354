"""
Arcanum CLI

Command-line interface for shielded contract calls on a confidential EVM
network.  Call data is encrypted before it leaves the process; query
responses are decrypted with the context that encrypted the request.

Commands:
  task      - Deploy-then-interact flows (hello, erc20, nft, perc20, ...)
  menu      - Interactive task menu
  deploy    - Deploy a contract and make it the active handle
  send      - Shielded transaction to the active contract
  query     - Shielded read-only call to the active contract
  handle    - Show the active contract handle
  cleanup   - Forget the active contract and remove the session directory
  whoami    - Show current wallet address
  info      - Show system information
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import click

from .anamnesis.registry import ContractHandleRegistry, default_session_dir
from .errors import ArcanumError, NoActiveContract
from .pneuma.rpc import NetworkEndpoint, get_balance, get_chain_id, get_rpc_url
from .sigil.eth import ARCANUM_ENV, get_address, load_config, load_private_key


# ============ Constants ============

VERSION = "0.3.0"


# ============ Banner ============


def _print_banner() -> None:
    border = click.style("  ◆ ═══════════════════════════════════════ ◆", fg="cyan")
    click.echo()
    click.echo(border)
    click.echo()
    click.echo(
        click.style("        A R C A N U M", fg="bright_white", bold=True)
        + click.style(f"        v{VERSION}", dim=True)
    )
    click.secho("        ─── Shielded Contract Calls ───", fg="cyan")
    click.echo()
    click.echo(border)
    click.echo()


# ============ Main CLI Group ============


@click.group(invoke_without_command=True)
@click.version_option(version=VERSION, prog_name="arcanum")
@click.option("--verbose", "-v", is_flag=True, help="Log protocol steps to stderr")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Arcanum: shielded contract calls on a confidential EVM network."""
    load_config()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        _print_banner()
        click.echo(ctx.get_help())


# ============ Top-level Commands ============

from .theurgy.tasks import task
from .theurgy.interact import deploy, handle, query, send
from .theurgy.menu import menu

cli.add_command(task)
cli.add_command(menu)
cli.add_command(deploy)
cli.add_command(send)
cli.add_command(query)
cli.add_command(handle)


# ============ Identity ============


@cli.command()
def whoami() -> None:
    """Show current wallet identity."""
    try:
        pk = load_private_key()
        address = get_address(pk)
        click.echo(f"Address: {address}")
    except ValueError:
        click.echo("No wallet found.")
        click.echo(f"Set PRIVATE_KEY in the environment or in {ARCANUM_ENV}.")
        sys.exit(1)


# ============ Session ============


@cli.command()
@click.option(
    "--session-dir",
    envvar="ARCANUM_SESSION_DIR",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding the active contract handle",
)
def cleanup(session_dir: Optional[Path]) -> None:
    """Forget the active contract and remove the session directory."""
    registry = ContractHandleRegistry(session_dir or default_session_dir())
    registry.destroy()
    click.echo("Cleanup complete.")


# ============ Info ============


@cli.command()
def info() -> None:
    """Show system information."""
    _print_banner()

    click.secho("  Status ─────────────────────────────────", fg="cyan")
    click.echo()

    try:
        address = get_address(load_private_key())
        click.echo(
            click.style("  Address:     ", dim=True)
            + click.style(address, fg="bright_white")
        )
        try:
            balance = get_balance(address, NetworkEndpoint.from_env())
            click.echo(click.style("  Balance:     ", dim=True) + f"{balance / 10**18:.6f} SWTR")
        except ArcanumError:
            click.echo(click.style("  Balance:     ", dim=True) + click.style("unreachable", fg="yellow"))
    except ValueError:
        click.echo(
            click.style("  Address:     ", dim=True)
            + click.style("not configured", fg="yellow")
            + click.style(f"  (set PRIVATE_KEY in {ARCANUM_ENV})", dim=True)
        )

    click.echo(click.style("  RPC:         ", dim=True) + get_rpc_url())
    click.echo(click.style("  Chain ID:    ", dim=True) + str(get_chain_id()))

    registry = ContractHandleRegistry(default_session_dir())
    try:
        active = registry.load().address
    except NoActiveContract:
        active = click.style("none", fg="yellow")
    click.echo(click.style("  Contract:    ", dim=True) + active)

    click.echo()

    click.secho("  Commands ───────────────────────────────", fg="cyan")
    click.echo()

    commands = [
        ("task    ", "Deploy and drive a contract"),
        ("menu    ", "Interactive task menu"),
        ("deploy  ", "Deploy and set the active contract"),
        ("send    ", "Shielded transaction"),
        ("query   ", "Shielded read-only call"),
        ("handle  ", "Show the active contract"),
        ("cleanup ", "Forget the active contract"),
        ("whoami  ", "Show current wallet address"),
    ]
    for cmd, desc in commands:
        click.echo(
            click.style("  ", dim=True)
            + click.style(cmd, fg="bright_white", bold=True)
            + click.style("  ◇  ", fg="cyan")
            + click.style(desc, dim=True)
        )

    click.echo()


# ============ Entry Points ============


def main() -> None:
    """Arcanum CLI entry point."""
    # Ensure UTF-8 output on Windows (for Unicode box-drawing / symbols)
    if sys.platform == "win32":
        try:
            sys.stdout.reconfigure(encoding="utf-8")  # type: ignore[union-attr]
            sys.stderr.reconfigure(encoding="utf-8")  # type: ignore[union-attr]
        except (AttributeError, OSError):
            pass  # Fallback: old Python or non-tty
    cli()


if __name__ == "__main__":
    main()
