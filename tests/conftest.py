"""
Shared fixtures: an in-process confidential node behind httpx.MockTransport.

The fake node speaks the JSON-RPC subset Arcanum uses, decrypts shielded
call data with its own X25519 key, runs small Python models of the task
contracts, and encrypts eth_call responses back to the caller's ephemeral
key.  Raw transactions are decoded with rlp and their sender recovered with
eth-account, so nonce handling is checked the way a real node would.
"""

from __future__ import annotations

import copy
import json
import os
import threading
from pathlib import Path
from typing import Any, Optional

import httpx
import pytest
import rlp
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, hmac, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from eth_abi import decode, encode
from eth_account import Account
from eth_hash.auto import keccak

from arcanum.anamnesis.registry import ContractHandleRegistry
from arcanum.pneuma.rpc import NetworkEndpoint
from arcanum.pneuma.shielded import ShieldedClient
from arcanum.sigil.eth import LocalSigner
from arcanum.theurgy.common import Session

CHAIN_ID = 1291
FAKE_RPC_URL = "http://fake-node.test/"
GAS_PRICE = 10**9
RUNTIME_CODE = "0x6080604052"


# ============ Contract models ============


class Revert(Exception):
    """Raised by a model to abort execution with a reason string."""


def _selector(signature: str) -> bytes:
    return keccak(signature.encode("utf-8"))[:4]


def _input_types(signature: str) -> list[str]:
    inner = signature[signature.index("(") + 1 : -1]
    return inner.split(",") if inner else []


class ContractModel:
    CONSTRUCTOR: tuple[str, ...] = ()
    FUNCTIONS: dict[str, tuple[str, ...]] = {}
    VIEWS: frozenset[str] = frozenset()

    def execute(self, data: bytes, sender: str) -> bytes:
        selector, body = data[:4], data[4:]
        for signature, outputs in self.FUNCTIONS.items():
            if _selector(signature) != selector:
                continue
            inputs = _input_types(signature)
            args = decode(inputs, body) if inputs else ()
            result = getattr(self, signature.split("(")[0])(sender.lower(), *args)
            if not outputs:
                return b""
            return encode(list(outputs), [result] if len(outputs) == 1 else list(result))
        raise Revert("function selector was not recognized")


class MessageModel(ContractModel):
    CONSTRUCTOR = ("string",)
    FUNCTIONS = {"setMessage(string)": (), "getMessage()": ("string",)}
    VIEWS = frozenset({"getMessage"})

    def __init__(self, sender: str, message: str = "") -> None:
        self.message = message

    def setMessage(self, sender: str, message: str) -> None:
        self.message = message

    def getMessage(self, sender: str) -> str:
        return self.message


class UpgradeableMessageModel(MessageModel):
    CONSTRUCTOR = ()
    FUNCTIONS = {**MessageModel.FUNCTIONS, "initialize(string)": ()}

    def __init__(self, sender: str) -> None:
        super().__init__(sender)
        self.initialized = False

    def initialize(self, sender: str, message: str) -> None:
        if self.initialized:
            raise Revert("Initializable: contract is already initialized")
        self.initialized = True
        self.message = message


class TokenModel(ContractModel):
    CONSTRUCTOR = ("string", "string")
    FUNCTIONS = {
        "mint100tokens()": (),
        "transfer(address,uint256)": ("bool",),
        "balanceOf(address)": ("uint256",),
        "name()": ("string",),
    }
    VIEWS = frozenset({"balanceOf", "name"})

    def __init__(self, sender: str, name: str, symbol: str) -> None:
        self.token_name = name
        self.symbol = symbol
        self.balances: dict[str, int] = {}

    def mint100tokens(self, sender: str) -> None:
        self.balances[sender] = self.balances.get(sender, 0) + 100 * 10**18

    def transfer(self, sender: str, recipient: str, amount: int) -> bool:
        if self.balances.get(sender, 0) < amount:
            raise Revert("ERC20: transfer amount exceeds balance")
        self.balances[sender] -= amount
        self.balances[recipient.lower()] = self.balances.get(recipient.lower(), 0) + amount
        return True

    def balanceOf(self, sender: str, account: str) -> int:
        return self.balances.get(account.lower(), 0)

    def name(self, sender: str) -> str:
        return self.token_name


class PrivateTokenModel(TokenModel):
    def balanceOf(self, sender: str, account: str) -> int:
        if sender != account.lower():
            raise Revert("PERC20: msg.sender != account")
        return super().balanceOf(sender, account)


class NFTModel(ContractModel):
    CONSTRUCTOR = ("string", "string")
    FUNCTIONS = {"safeMint(address,uint256)": (), "ownerOf(uint256)": ("address",)}
    VIEWS = frozenset({"ownerOf"})

    def __init__(self, sender: str, name: str, symbol: str) -> None:
        self.owners: dict[int, str] = {}

    def safeMint(self, sender: str, to: str, token_id: int) -> None:
        if token_id in self.owners:
            raise Revert("ERC721: token already minted")
        self.owners[token_id] = to

    def ownerOf(self, sender: str, token_id: int) -> str:
        if token_id not in self.owners:
            raise Revert("ERC721: invalid token ID")
        return self.owners[token_id]


class PrivateNFTModel(NFTModel):
    CONSTRUCTOR = ("string", "string", "address")

    def __init__(self, sender: str, name: str, symbol: str, owner: str) -> None:
        super().__init__(sender, name, symbol)
        self.contract_owner = owner.lower()

    def safeMint(self, sender: str, to: str, token_id: int) -> None:
        if sender != self.contract_owner:
            raise Revert("Ownable: caller is not the owner")
        super().safeMint(sender, to, token_id)


class ProxyModel(ContractModel):
    CONSTRUCTOR = ("address", "address", "bytes")

    def __init__(self, state: ContractModel) -> None:
        self.state = state

    def execute(self, data: bytes, sender: str) -> bytes:
        return self.state.execute(data, sender)


CONTRACT_MODELS: dict[str, type[ContractModel]] = {
    "Swisstronik": MessageModel,
    "SwisstronikUpgradeable": UpgradeableMessageModel,
    "TestToken": TokenModel,
    "PERC20Sample": PrivateTokenModel,
    "TestNFT": NFTModel,
    "PrivateNFT": PrivateNFTModel,
    "TransparentUpgradeableProxy": ProxyModel,
}

BYTECODES = {
    name: "0x60806040" + f"{index:08x}" for index, name in enumerate(CONTRACT_MODELS, start=1)
}


def abi_for(model: type[ContractModel]) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    if model.CONSTRUCTOR:
        entries.append({
            "type": "constructor",
            "stateMutability": "nonpayable",
            "inputs": [{"name": f"arg{i}", "type": t} for i, t in enumerate(model.CONSTRUCTOR)],
        })
    for signature, outputs in model.FUNCTIONS.items():
        name = signature.split("(")[0]
        entries.append({
            "type": "function",
            "name": name,
            "stateMutability": "view" if name in model.VIEWS else "nonpayable",
            "inputs": [{"name": f"arg{i}", "type": t} for i, t in enumerate(_input_types(signature))],
            "outputs": [{"name": "", "type": t} for t in outputs],
        })
    entries.append({"type": "event", "name": "Touched", "inputs": [], "anonymous": False})
    return entries


# ============ Fake node ============


class RpcFault(Exception):
    def __init__(self, code: int, message: str, data: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


def _revert_fault(reason: str) -> RpcFault:
    data = "0x08c379a0" + encode(["string"], [reason]).hex()
    return RpcFault(3, f"execution reverted: {reason}", data)


_REAL_KEY = object()


class FakeConfidentialNode:
    """
    Knobs tests flip:
        failures: method -> "timeout" | "http503" | "rpc_error" | "bad_revert"
        node_key_response: value returned by eth_getNodePublicKey
        withhold_receipts: never report inclusion
        tamper_responses: flip one bit of every eth_call response
        foreign_responses: seal eth_call responses under an unrelated key
    """

    def __init__(self, chain_id: int = CHAIN_ID) -> None:
        self.chain_id = chain_id
        self._key = X25519PrivateKey.generate()
        self.public_key = self._key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.contracts: dict[str, ContractModel] = {}
        self.nonces: dict[str, int] = {}
        self.receipts: dict[str, dict[str, Any]] = {}
        self.transactions: list[dict[str, Any]] = []
        self.calls: list[str] = []
        self.block_number = 0

        self.failures: dict[str, str] = {}
        self.node_key_response: Any = _REAL_KEY
        self.withhold_receipts = False
        self.tamper_responses = False
        self.foreign_responses = False

        self._lock = threading.Lock()
        self._methods = {
            "eth_getNodePublicKey": self._get_node_public_key,
            "eth_chainId": lambda: hex(self.chain_id),
            "eth_getBalance": lambda address, block: hex(10**18),
            "eth_getTransactionCount": self._get_transaction_count,
            "eth_gasPrice": lambda: hex(GAS_PRICE),
            "eth_getCode": self._get_code,
            "eth_estimateGas": self._estimate_gas,
            "eth_call": self._call,
            "eth_sendRawTransaction": self._send_raw_transaction,
            "eth_getTransactionReceipt": self._get_transaction_receipt,
        }

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def count(self, method: str) -> int:
        return self.calls.count(method)

    def handle(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        method, params, request_id = payload["method"], payload["params"], payload["id"]
        with self._lock:
            self.calls.append(method)
            failure = self.failures.get(method)

        if failure == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if failure == "http503":
            return httpx.Response(503, text="service unavailable")
        if failure == "rpc_error":
            return self._error_response(request_id, RpcFault(-32601, f"{method} not available"))
        if failure == "bad_revert":
            return self._error_response(request_id, RpcFault(3, "execution reverted", "0x123"))

        handler = self._methods.get(method)
        if handler is None:
            return self._error_response(request_id, RpcFault(-32601, "method not found"))
        try:
            with self._lock:
                result = handler(*params)
        except RpcFault as fault:
            return self._error_response(request_id, fault)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": request_id, "result": result})

    @staticmethod
    def _error_response(request_id: int, fault: RpcFault) -> httpx.Response:
        error: dict[str, Any] = {"code": fault.code, "message": fault.message}
        if fault.data is not None:
            error["data"] = fault.data
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": request_id, "error": error})

    # ---- confidentiality ----

    def _derive(self, peer_public_key: bytes) -> bytes:
        shared = self._key.exchange(X25519PublicKey.from_public_bytes(peer_public_key))
        mac = hmac.HMAC(b"IOEncryptionKeyV1", hashes.SHA256())
        mac.update(shared)
        return mac.finalize()

    def open_envelope(self, data: bytes) -> tuple[bytes, bytes]:
        """Decrypt shielded call data; returns (response key, plaintext)."""
        if len(data) < 32 + 12 + 16:
            raise RpcFault(-32000, "invalid encrypted payload")
        key = self._derive(data[:32])
        try:
            plaintext = AESGCM(key).decrypt(data[32:44], data[44:], None)
        except InvalidTag:
            raise RpcFault(-32000, "cannot decrypt call data") from None
        return key, plaintext

    def _seal_response(self, key: bytes, data: bytes) -> bytes:
        if self.foreign_responses:
            key = os.urandom(32)
        nonce = os.urandom(12)
        sealed = nonce + AESGCM(key).encrypt(nonce, data, None)
        if self.tamper_responses:
            sealed = sealed[:-1] + bytes([sealed[-1] ^ 0x01])
        return sealed

    # ---- RPC methods ----

    def _get_node_public_key(self, block: str) -> Any:
        if self.node_key_response is _REAL_KEY:
            return "0x" + self.public_key.hex()
        return self.node_key_response

    def _get_transaction_count(self, address: str, block: str) -> str:
        return hex(self.nonces.get(address.lower(), 0))

    def _get_code(self, address: str, block: str) -> str:
        return RUNTIME_CODE if address.lower() in self.contracts else "0x"

    def _execute(self, call: dict[str, Any]) -> tuple[bytes, bytes]:
        model = self.contracts[call["to"].lower()]
        key, plaintext = self.open_envelope(bytes.fromhex(call["data"][2:]))
        try:
            output = copy.deepcopy(model).execute(plaintext, call.get("from", "0x" + "0" * 40))
        except Revert as exc:
            raise _revert_fault(str(exc)) from None
        return key, output

    def _estimate_gas(self, call: dict[str, Any]) -> str:
        if "to" not in call:
            return hex(1_500_000)
        if call["to"].lower() in self.contracts:
            self._execute(call)
        return hex(90_000)

    def _call(self, call: dict[str, Any], block: str) -> str:
        if (call.get("to") or "").lower() not in self.contracts:
            return "0x"
        key, output = self._execute(call)
        return "0x" + self._seal_response(key, output).hex()

    def _send_raw_transaction(self, raw_hex: str) -> str:
        raw = bytes.fromhex(raw_hex[2:])
        nonce_b, _gas_price, _gas, to_b, _value, data, v = rlp.decode(raw)[:7]
        nonce = int.from_bytes(nonce_b, "big")
        if (int.from_bytes(v, "big") - 35) // 2 != self.chain_id:
            raise RpcFault(-32000, "invalid chain id for signer")

        sender = Account.recover_transaction(raw_hex).lower()
        expected = self.nonces.get(sender, 0)
        if nonce < expected:
            raise RpcFault(-32000, "nonce too low")
        if nonce > expected:
            raise RpcFault(-32000, "nonce too high")
        self.nonces[sender] = expected + 1

        tx_hash = "0x" + keccak(raw).hex()
        to = "0x" + to_b.hex() if to_b else None
        self.transactions.append({"hash": tx_hash, "from": sender, "to": to, "nonce": nonce, "data": data})

        contract_address = None
        if to is None:
            contract_address = "0x" + keccak(rlp.encode([bytes.fromhex(sender[2:]), nonce]))[12:].hex()
            success = self._create(sender, contract_address, data)
        else:
            success = self._transact(sender, to, data)

        self.block_number += 1
        self.receipts[tx_hash] = {
            "transactionHash": tx_hash,
            "blockNumber": hex(self.block_number),
            "blockHash": "0x" + keccak(self.block_number.to_bytes(8, "big")).hex(),
            "from": sender,
            "to": to,
            "status": "0x1" if success else "0x0",
            "gasUsed": hex(52_000),
            "contractAddress": contract_address if success else None,
        }
        return tx_hash

    def _create(self, sender: str, address: str, data: bytes) -> bool:
        for name, bytecode in BYTECODES.items():
            code = bytes.fromhex(bytecode[2:])
            if not data.startswith(code):
                continue
            model_cls = CONTRACT_MODELS[name]
            args = decode(list(model_cls.CONSTRUCTOR), data[len(code):]) if model_cls.CONSTRUCTOR else ()
            try:
                if model_cls is ProxyModel:
                    model = self._create_proxy(sender, *args)
                else:
                    model = model_cls(sender, *args)
            except Revert:
                return False
            self.contracts[address] = model
            return True
        return False

    def _create_proxy(self, sender: str, logic: str, admin: str, init_data: bytes) -> ProxyModel:
        implementation = self.contracts.get(logic.lower())
        if implementation is None:
            raise Revert("ERC1967: new implementation is not a contract")
        state = type(implementation)(sender)
        if init_data:
            state.execute(init_data, sender)
        return ProxyModel(state)

    def _transact(self, sender: str, to: str, data: bytes) -> bool:
        model = self.contracts.get(to)
        if model is None:
            return True
        try:
            _, plaintext = self.open_envelope(data)
            working = copy.deepcopy(model)
            working.execute(plaintext, sender)
        except (RpcFault, Revert):
            return False
        self.contracts[to] = working
        return True

    def _get_transaction_receipt(self, tx_hash: str) -> Optional[dict[str, Any]]:
        if self.withhold_receipts:
            return None
        return self.receipts.get(tx_hash)


# ============ Fixtures ============


@pytest.fixture()
def node() -> FakeConfidentialNode:
    return FakeConfidentialNode()


@pytest.fixture()
def endpoint(node: FakeConfidentialNode) -> NetworkEndpoint:
    return NetworkEndpoint(url=FAKE_RPC_URL, chain_id=CHAIN_ID, timeout=5.0, transport=node.transport)


@pytest.fixture()
def signer() -> LocalSigner:
    return LocalSigner(Account.create())


@pytest.fixture()
def other_signer() -> LocalSigner:
    return LocalSigner(Account.create())


@pytest.fixture()
def client(endpoint: NetworkEndpoint) -> ShieldedClient:
    return ShieldedClient(endpoint, confirmation_timeout=2.0, poll_interval=0.01)


@pytest.fixture()
def artifacts_dir(tmp_path: Path) -> Path:
    """Hardhat-style artifacts/ tree for every modelled contract."""
    root = tmp_path / "artifacts"
    for name, model in CONTRACT_MODELS.items():
        folder = root / "contracts" / f"{name}.sol"
        folder.mkdir(parents=True)
        artifact = {"contractName": name, "abi": abi_for(model), "bytecode": BYTECODES[name]}
        (folder / f"{name}.json").write_text(json.dumps(artifact), encoding="utf-8")
        (folder / f"{name}.dbg.json").write_text(json.dumps({"buildInfo": "x"}), encoding="utf-8")
    return root


@pytest.fixture()
def registry(tmp_path: Path) -> ContractHandleRegistry:
    return ContractHandleRegistry(tmp_path / "session")


@pytest.fixture()
def session(
    endpoint: NetworkEndpoint,
    client: ShieldedClient,
    signer: LocalSigner,
    registry: ContractHandleRegistry,
    artifacts_dir: Path,
) -> Session:
    return Session(
        endpoint=endpoint,
        client=client,
        signer=signer,
        registry=registry,
        artifacts_dir=artifacts_dir,
    )
