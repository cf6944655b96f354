"""
Shared plumbing for task commands: session setup, retry policy, handle
resolution and failure rendering.
"""

from __future__ import annotations

import functools
import logging
import random
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import click

from ..anamnesis.registry import ContractHandle, ContractHandleRegistry, default_session_dir
from ..errors import (
    ArcanumError,
    DecryptionFailed,
    KeyExchangeRejected,
    NetworkUnavailable,
    NoActiveContract,
)
from ..pneuma import rpc
from ..pneuma.abi import ContractArtifact, ContractInterface, load_artifact
from ..pneuma.rpc import NetworkEndpoint
from ..pneuma.shielded import ShieldedClient
from ..pneuma.tx import DEFAULT_CONFIRMATION_TIMEOUT, TransactionOutcome
from ..sigil.eth import LocalSigner, get_signer, load_private_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3


def backoff_with_jitter(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter_factor: float = 0.3,
) -> float:
    """
    Exponential backoff with jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        jitter_factor: Fraction of delay to add as jitter (0.0-1.0)
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    jitter = delay * jitter_factor * random.uniform(-1, 1)
    return max(0.1, delay + jitter)


def run_with_retry(
    operation: Callable[[], T],
    *,
    is_send: bool = False,
    attempts: int = DEFAULT_ATTEMPTS,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run a shielded operation under the caller-side retry policy.

    - NetworkUnavailable: retried with backoff.  For sends only when it
      happened during negotiation, before anything reached the network.
    - KeyExchangeRejected / DecryptionFailed: one fresh attempt (a new
      context is negotiated), then surfaced.  Sends never retry after a
      decryption failure.
    - Everything else (TransactionFailed, Unconfirmed, EncodingMismatch,
      NoActiveContract) is surfaced immediately.
    """
    fresh_attempt_used = False
    attempt = 0
    while True:
        try:
            return operation()
        except NetworkUnavailable as exc:
            if is_send and exc.phase != "negotiation":
                raise
            if attempt + 1 >= attempts:
                raise
            delay = backoff_with_jitter(attempt, base_delay=base_delay)
            logger.warning("network unavailable during %s, retrying in %.1fs", exc.phase, delay)
            attempt += 1
            sleep(delay)
        except (KeyExchangeRejected, DecryptionFailed) as exc:
            if fresh_attempt_used or (is_send and isinstance(exc, DecryptionFailed)):
                raise
            fresh_attempt_used = True
            logger.warning("%s during %s, retrying once with a fresh context", type(exc).__name__, exc.phase)


@dataclass
class Session:
    """Everything one task run needs: network, client, signer, registry."""
    endpoint: NetworkEndpoint
    client: ShieldedClient
    signer: LocalSigner
    registry: ContractHandleRegistry
    artifacts_dir: Optional[Path] = None

    def artifact(self, name: str) -> ContractArtifact:
        return load_artifact(name, self.artifacts_dir)

    def resolve_handle(self, interface: Optional[ContractInterface] = None) -> ContractHandle:
        """
        Active handle from the registry, bound to ``interface`` when given.

        Also checks that the address still carries code, so an interaction
        step never runs against an address where nothing is deployed.
        """
        handle = self.registry.load()
        if interface is not None:
            handle = handle.bind(interface)
        code = run_with_retry(lambda: rpc.get_code(handle.address, self.endpoint))
        if code in ("0x", "0x0", ""):
            raise NoActiveContract(
                "Active handle points at an address without code",
                destination=handle.address,
            )
        return handle

    def deploy(
        self,
        artifact: ContractArtifact,
        constructor_args: Optional[list[Any]] = None,
        *,
        store: bool = True,
    ) -> ContractHandle:
        """Deploy ``artifact``; on confirmation make it the active handle.

        A failed deploy leaves the previous active handle in place.
        """
        handle = run_with_retry(
            lambda: self.client.deploy(self.signer, artifact, constructor_args),
            is_send=True,
        )
        if store:
            self.registry.store(handle)
        return handle


def open_session(
    rpc_url: Optional[str] = None,
    session_dir: Optional[Path] = None,
    artifacts_dir: Optional[Path] = None,
    timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
    private_key: Optional[str] = None,
) -> Session:
    endpoint = NetworkEndpoint.from_env(rpc_url)
    return Session(
        endpoint=endpoint,
        client=ShieldedClient(endpoint, confirmation_timeout=timeout),
        signer=get_signer(private_key or load_private_key()),
        registry=ContractHandleRegistry(session_dir or default_session_dir()),
        artifacts_dir=artifacts_dir,
    )


def session_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Common options for commands that talk to the network."""
    options = [
        click.option(
            "--rpc-url",
            envvar="SWISSTRONIK_RPC",
            default=rpc.DEFAULT_RPC_URL,
            show_default=True,
            help="Confidential network RPC URL",
        ),
        click.option(
            "--session-dir",
            envvar="ARCANUM_SESSION_DIR",
            type=click.Path(file_okay=False, path_type=Path),
            default=None,
            help="Directory holding the active contract handle",
        ),
        click.option(
            "--artifacts",
            envvar="ARCANUM_ARTIFACTS",
            type=click.Path(file_okay=False, path_type=Path),
            default=None,
            help="Hardhat artifacts/ or Foundry out/ directory",
        ),
        click.option(
            "--timeout",
            default=DEFAULT_CONFIRMATION_TIMEOUT,
            type=float,
            show_default=True,
            help="Confirmation deadline in seconds",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def session_from_options(
    rpc_url: str,
    session_dir: Optional[Path],
    artifacts: Optional[Path],
    timeout: float,
) -> Session:
    try:
        return open_session(rpc_url, session_dir, artifacts, timeout)
    except ValueError as exc:
        click.secho(f"ERROR: {exc}", fg="red")
        sys.exit(1)


def render_failure(exc: ArcanumError) -> None:
    """Report which phase failed and the public identifiers involved."""
    click.secho(f"FAILED ({exc.phase}): {exc.message}", fg="red", err=True)
    for key, value in exc.identifiers().items():
        if key == "phase":
            continue
        click.echo(f"  {key}: {value}", err=True)
    outcome = getattr(exc, "outcome", None)
    if isinstance(outcome, TransactionOutcome):
        click.echo(f"  explorer: {outcome.explorer_url}", err=True)


def guarded(func: Callable[..., T]) -> Callable[..., T]:
    """Render ArcanumError failures and exit with their exit code."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return func(*args, **kwargs)
        except ArcanumError as exc:
            render_failure(exc)
            sys.exit(exc.exit_code)

    return wrapper


def echo_outcome(label: str, outcome: TransactionOutcome) -> None:
    click.secho(f"  {label}: confirmed in block {outcome.block_number}", fg="green")
    click.echo(click.style("    TX: ", dim=True) + outcome.explorer_url)
