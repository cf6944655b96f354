"""
Theurgy Menu - Numbered interactive menu over the task flows.

One task runs at a time; a failed task is reported and the menu comes back.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import click

from ..errors import ArcanumError
from . import tasks
from .common import Session, render_failure, session_from_options, session_options

MENU_ITEMS = [
    ("1", "Deploy a simple message contract"),
    ("2", "Create and manage a new ERC20 token"),
    ("3", "Create and manage a new NFT"),
    ("4", "Deploy and interact with a PERC20 token"),
    ("5", "Create and manage a new private NFT"),
    ("6", "Deploy an upgradeable message contract"),
    ("7", "Cleanup session"),
    ("8", "Exit"),
]


def _prompt_name(label: str) -> str:
    while True:
        try:
            return tasks.validate_token_name(click.prompt(label), label)
        except click.BadParameter as exc:
            click.secho(str(exc.message), fg="yellow")


def _print_menu() -> None:
    click.echo("========================================")
    click.secho("  Arcanum Task Menu", bold=True)
    click.echo("========================================")
    for key, label in MENU_ITEMS:
        click.echo(f"{key}. {label}")
    click.echo("========================================")


def _task_for(choice: str) -> Optional[Callable[[Session], object]]:
    if choice == "1":
        return tasks.run_hello
    if choice == "2":
        name, symbol = _prompt_name("Token name"), _prompt_name("Token symbol")
        recipient = click.prompt("Recipient address")
        return lambda s: tasks.run_erc20(s, name, symbol, recipient)
    if choice == "3":
        name, symbol = _prompt_name("NFT name"), _prompt_name("NFT symbol")
        return lambda s: tasks.run_nft(s, name, symbol)
    if choice == "4":
        name, symbol = _prompt_name("Token name"), _prompt_name("Token symbol")
        recipient = click.prompt("Recipient address")
        return lambda s: tasks.run_perc20(s, name, symbol, recipient)
    if choice == "5":
        name, symbol = _prompt_name("NFT name"), _prompt_name("NFT symbol")
        return lambda s: tasks.run_private_nft(s, name, symbol)
    if choice == "6":
        return tasks.run_proxy
    return None


@click.command()
@session_options
def menu(rpc_url: str, session_dir: Optional[Path], artifacts: Optional[Path], timeout: float) -> None:
    """Interactive task menu."""
    session = session_from_options(rpc_url, session_dir, artifacts, timeout)

    while True:
        _print_menu()
        choice = click.prompt("Choose an option", default="8").strip()

        if choice == "8":
            return
        if choice == "7":
            tasks.run_cleanup(session.registry.session_dir)
            click.echo("Cleanup complete.")
            continue

        run = _task_for(choice)
        if run is None:
            click.secho("Invalid option. Please try again.", fg="yellow")
            continue

        try:
            run(session)
            click.secho("Task completed successfully.", fg="green")
        except ArcanumError as exc:
            render_failure(exc)
