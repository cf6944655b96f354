"""
Contract Handle Registry

Holds the single active contract for the current session.  The backing
store is one opaque address string in the session directory, so a deploy
step and later interaction steps (possibly separate processes) resolve the
same address.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..errors import NoActiveContract
from ..pneuma.abi import ContractInterface
from ..utils import is_address, to_checksum_address

logger = logging.getLogger(__name__)

HANDLE_FILE = "contract.txt"
DEFAULT_SESSION_DIR = ".arcanum-session"


@dataclass(frozen=True)
class ContractHandle:
    """
    Attributes:
        address: Checksummed contract address
        interface: Function shapes of the contract (None when the handle was
            restored from disk and not yet bound)
    """
    address: str
    interface: Optional[ContractInterface] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", to_checksum_address(self.address))

    def bind(self, interface: ContractInterface) -> "ContractHandle":
        return ContractHandle(self.address, interface)

    def require_interface(self) -> ContractInterface:
        if self.interface is None:
            raise NoActiveContract(
                "Active contract has no interface bound", destination=self.address
            )
        return self.interface


def default_session_dir() -> Path:
    return Path(os.environ.get("ARCANUM_SESSION_DIR", DEFAULT_SESSION_DIR)).expanduser()


@dataclass
class ContractHandleRegistry:
    """
    One active handle per session.

    ``store`` unconditionally replaces the previous handle, ``clear``
    invalidates it, and ``load`` fails with NoActiveContract when no deploy
    has been stored since the last clear.  No concurrent writers are expected.
    """

    session_dir: Path = field(default_factory=default_session_dir)
    _handle: Optional[ContractHandle] = field(default=None, init=False, repr=False)

    @property
    def path(self) -> Path:
        return self.session_dir / HANDLE_FILE

    def store(self, handle: ContractHandle) -> None:
        self.session_dir.mkdir(parents=True, exist_ok=True)
        self._atomic_write(handle.address)
        self._handle = handle
        logger.info("active contract is now %s", handle.address)

    def load(self) -> ContractHandle:
        address = self._read_address()
        if address is None:
            self._handle = None
            raise NoActiveContract(
                "No active contract in this session. Run a deploy step first."
            )
        if self._handle is not None and self._handle.address.lower() == address.lower():
            return self._handle
        # Written by another process (or edited); interface must be re-bound.
        self._handle = ContractHandle(address)
        return self._handle

    def clear(self) -> None:
        self._handle = None
        self.path.unlink(missing_ok=True)
        logger.info("active contract cleared")

    def destroy(self) -> None:
        """Clear the handle and remove the whole session directory."""
        self.clear()
        if self.session_dir.exists():
            shutil.rmtree(self.session_dir)

    def _read_address(self) -> Optional[str]:
        if not self.path.exists():
            return None
        value = self.path.read_text(encoding="utf-8").strip()
        if not is_address(value):
            logger.warning("ignoring malformed handle file %s", self.path)
            return None
        return value

    def _atomic_write(self, value: str) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as handle:
                handle.write(value)
                handle.flush()
                os.fsync(handle.fileno())
            tmp.replace(self.path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise
