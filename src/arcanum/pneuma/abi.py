"""
ABI Loader and contract interface.

Artifacts come from Hardhat (``artifacts/**/<Name>.json``) or Foundry
(``out/<Name>.sol/<Name>.json``) build output.  Compilation itself happens
outside Arcanum; this module only reads what the toolchain produced.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from functools import cached_property, lru_cache
from pathlib import Path
from typing import Any, Optional, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError

from ..errors import ArtifactNotFound, EncodingMismatch
from ..utils import keccak256

_ARTIFACT_DIR_NAMES = ("artifacts", "out")


def _find_artifacts_dir(start: Optional[Path] = None) -> Path:
    """
    Locate the build output directory.

    ARCANUM_ARTIFACTS wins; otherwise searches from ``start`` (default: the
    working directory) upward for ``artifacts/`` or ``out/``.
    """
    configured = os.environ.get("ARCANUM_ARTIFACTS")
    if configured:
        path = Path(configured).expanduser()
        if not path.is_dir():
            raise ArtifactNotFound(f"ARCANUM_ARTIFACTS is not a directory: {path}")
        return path

    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        for name in _ARTIFACT_DIR_NAMES:
            candidate = parent / name
            if candidate.is_dir():
                return candidate
    raise ArtifactNotFound(
        "Cannot find artifacts/ or out/. Compile the contracts first "
        "or set ARCANUM_ARTIFACTS."
    )


def _type_string(param: dict[str, Any]) -> str:
    """Canonical ABI type for a parameter, expanding tuples."""
    typ = param["type"]
    if typ.startswith("tuple"):
        inner = ",".join(_type_string(c) for c in param.get("components", []))
        return f"({inner}){typ[len('tuple'):]}"
    return typ


@dataclass(frozen=True)
class FunctionShape:
    """Argument and return shape of one contract function."""
    name: str
    input_types: tuple[str, ...]
    output_types: tuple[str, ...]
    state_mutability: str = "nonpayable"

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @property
    def selector(self) -> bytes:
        # NOTE: Keccak-256 != SHA3-256 (NIST). Never use hashlib.sha3_256 here.
        return keccak256(self.signature.encode("utf-8"))[:4]

    @property
    def is_read_only(self) -> bool:
        return self.state_mutability in ("view", "pure")


class ContractInterface:
    """Function name -> argument/return shape, plus ABI encoding."""

    def __init__(self, abi: Sequence[dict[str, Any]], name: str = "contract") -> None:
        self.abi = list(abi)
        self.name = name

    @cached_property
    def _functions(self) -> dict[str, list[FunctionShape]]:
        table: dict[str, list[FunctionShape]] = {}
        for entry in self.abi:
            if entry.get("type") != "function":
                continue
            shape = FunctionShape(
                name=entry["name"],
                input_types=tuple(_type_string(p) for p in entry.get("inputs", [])),
                output_types=tuple(_type_string(p) for p in entry.get("outputs", [])),
                state_mutability=entry.get("stateMutability", "nonpayable"),
            )
            table.setdefault(shape.name, []).append(shape)
        return table

    @cached_property
    def constructor_types(self) -> tuple[str, ...]:
        for entry in self.abi:
            if entry.get("type") == "constructor":
                return tuple(_type_string(p) for p in entry.get("inputs", []))
        return ()

    def function_names(self) -> list[str]:
        return sorted(self._functions)

    def function_signature(self, name: str, arity: Optional[int] = None) -> FunctionShape:
        """
        Resolve a function by name (and argument count for overloads).

        Raises:
            EncodingMismatch: Unknown function or ambiguous overload
        """
        candidates = self._functions.get(name)
        if not candidates:
            raise EncodingMismatch(
                f"Function {name} not found in {self.name} ABI "
                f"(available: {', '.join(self.function_names()) or 'none'})",
                phase="encoding",
            )
        if arity is not None:
            candidates = [c for c in candidates if len(c.input_types) == arity]
            if not candidates:
                raise EncodingMismatch(
                    f"{self.name}.{name} takes no overload with {arity} argument(s)",
                    phase="encoding",
                )
        if len(candidates) > 1:
            raise EncodingMismatch(
                f"{self.name}.{name} is overloaded; pass arguments to disambiguate",
                phase="encoding",
            )
        return candidates[0]

    def encode_call(self, name: str, args: Optional[Sequence[Any]] = None) -> bytes:
        """ABI-encode a function call into plaintext call data."""
        args = list(args or [])
        shape = self.function_signature(name, arity=len(args))
        try:
            encoded_args = encode(list(shape.input_types), args) if args else b""
        except (EncodingError, TypeError, ValueError, OverflowError) as exc:
            raise EncodingMismatch(
                f"Arguments do not match {shape.signature}: {exc}", phase="encoding"
            ) from exc
        return shape.selector + encoded_args

    def decode_return(self, name: str, data: bytes) -> Any:
        """
        ABI-decode a function's return data.

        Returns:
            None for functions without outputs, the single value for one
            output, otherwise a tuple.
        """
        shapes = self._functions.get(name)
        if not shapes:
            raise EncodingMismatch(f"Function {name} not found in {self.name} ABI")
        if len({s.output_types for s in shapes}) > 1:
            raise EncodingMismatch(
                f"{self.name}.{name} overloads disagree on return shape"
            )
        shape = shapes[0]
        if not shape.output_types:
            return None
        try:
            decoded = decode(list(shape.output_types), data)
        except (DecodingError, ValueError, OverflowError) as exc:
            raise EncodingMismatch(
                f"Return data does not match {shape.signature} -> "
                f"({','.join(shape.output_types)}): {exc}"
            ) from exc
        if len(decoded) == 1:
            return decoded[0]
        return decoded

    def encode_constructor(self, args: Optional[Sequence[Any]] = None) -> bytes:
        args = list(args or [])
        types = list(self.constructor_types)
        if len(types) != len(args):
            raise EncodingMismatch(
                f"{self.name} constructor takes {len(types)} argument(s), got {len(args)}",
                phase="encoding",
            )
        if not args:
            return b""
        try:
            return encode(types, args)
        except (EncodingError, TypeError, ValueError, OverflowError) as exc:
            raise EncodingMismatch(
                f"Constructor arguments do not match {self.name}: {exc}", phase="encoding"
            ) from exc


@dataclass(frozen=True)
class ContractArtifact:
    name: str
    abi: tuple[dict[str, Any], ...]
    bytecode: str

    @property
    def interface(self) -> ContractInterface:
        return ContractInterface(self.abi, name=self.name)

    def deploy_data(self, constructor_args: Optional[Sequence[Any]] = None) -> bytes:
        """Creation bytecode with ABI-encoded constructor arguments appended."""
        code = self.bytecode[2:] if self.bytecode.startswith("0x") else self.bytecode
        if not code:
            raise ArtifactNotFound(f"No bytecode in artifact for {self.name}")
        return bytes.fromhex(code) + self.interface.encode_constructor(constructor_args)


def _artifact_path(out_dir: Path, contract_name: str) -> Path:
    foundry = out_dir / f"{contract_name}.sol" / f"{contract_name}.json"
    if foundry.exists():
        return foundry
    for candidate in sorted(out_dir.rglob(f"{contract_name}.json")):
        if not candidate.name.endswith(".dbg.json"):
            return candidate
    raise ArtifactNotFound(
        f"Artifact not found for {contract_name} under {out_dir}. "
        f"Compile the contracts first."
    )


@lru_cache(maxsize=32)
def _load_artifact_cached(contract_name: str, out_dir: Path) -> ContractArtifact:
    path = _artifact_path(out_dir, contract_name)
    with path.open("r", encoding="utf-8") as f:
        artifact = json.load(f)

    bytecode = artifact.get("bytecode", "")
    if isinstance(bytecode, dict):  # Foundry layout
        bytecode = bytecode.get("object", "")

    return ContractArtifact(
        name=contract_name,
        abi=tuple(artifact["abi"]),
        bytecode=bytecode or "",
    )


def load_artifact(contract_name: str, artifacts_dir: Optional[Path] = None) -> ContractArtifact:
    """
    Load ABI and creation bytecode for a contract.

    Args:
        contract_name: Contract name (e.g., "Swisstronik", "PERC20Sample")
        artifacts_dir: Build output directory (default: auto-discovered)

    Raises:
        ArtifactNotFound: If no artifact exists for the contract
    """
    out_dir = (artifacts_dir or _find_artifacts_dir()).resolve()
    return _load_artifact_cached(contract_name, out_dir)

