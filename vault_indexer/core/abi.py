"""
ERC-4626 contract interface fragments.

The Deposit / Withdraw event shapes and the two state getters are built in;
an external ABI file (e.g. the vault's compiled artifact) may replace them, as
long as the event input types agree with the standard.
"""

import json
from typing import Any, Dict, List, Optional

from web3 import Web3

from vault_indexer.core.errors import FatalConfigError
from vault_indexer.core.types import to_hex

DEPOSIT_SIGNATURE = "Deposit(address,address,uint256,uint256)"
WITHDRAW_SIGNATURE = "Withdraw(address,address,address,uint256,uint256)"

DEPOSIT_EVENT_ABI = {
    "anonymous": False,
    "inputs": [
        {"indexed": True,  "internalType": "address", "name": "sender", "type": "address"},
        {"indexed": True,  "internalType": "address", "name": "owner",  "type": "address"},
        {"indexed": False, "internalType": "uint256", "name": "assets", "type": "uint256"},
        {"indexed": False, "internalType": "uint256", "name": "shares", "type": "uint256"},
    ],
    "name": "Deposit", "type": "event",
}
WITHDRAW_EVENT_ABI = {
    "anonymous": False,
    "inputs": [
        {"indexed": True,  "internalType": "address", "name": "sender",   "type": "address"},
        {"indexed": True,  "internalType": "address", "name": "receiver", "type": "address"},
        {"indexed": True,  "internalType": "address", "name": "owner",    "type": "address"},
        {"indexed": False, "internalType": "uint256", "name": "assets",   "type": "uint256"},
        {"indexed": False, "internalType": "uint256", "name": "shares",   "type": "uint256"},
    ],
    "name": "Withdraw", "type": "event",
}
VAULT_STATE_ABI = [
    {"name": "totalAssets", "inputs": [], "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"name": "totalSupply", "inputs": [], "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
]

DEPOSIT_TOPIC0 = to_hex(Web3.keccak(text=DEPOSIT_SIGNATURE))
WITHDRAW_TOPIC0 = to_hex(Web3.keccak(text=WITHDRAW_SIGNATURE))


class VaultInterface:
    """Event and function fragments used by the decoder and the sampler.

    Loaded once at startup and not modified afterwards.
    """

    def __init__(
        self,
        deposit_abi: Dict[str, Any] = DEPOSIT_EVENT_ABI,
        withdraw_abi: Dict[str, Any] = WITHDRAW_EVENT_ABI,
        state_abi: Optional[List[Dict[str, Any]]] = None,
    ):
        self.deposit_abi = deposit_abi
        self.withdraw_abi = withdraw_abi
        self.state_abi = state_abi or VAULT_STATE_ABI
        self.topics = {DEPOSIT_TOPIC0: deposit_abi, WITHDRAW_TOPIC0: withdraw_abi}

    @property
    def topic_list(self) -> List[str]:
        return [DEPOSIT_TOPIC0, WITHDRAW_TOPIC0]

    @classmethod
    def from_file(cls, path: str) -> "VaultInterface":
        """Load fragments from a JSON ABI (plain list, or an artifact with an `abi` key)."""
        try:
            with open(path, "r") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            raise FatalConfigError(f"Cannot load ABI from {path!r}: {exc}") from exc
        if isinstance(data, dict) and "abi" in data:
            data = data["abi"]
        if not isinstance(data, list):
            raise FatalConfigError(f"Invalid ABI format in {path!r}")

        by_name = {(entry.get("type"), entry.get("name")): entry for entry in data if isinstance(entry, dict)}
        deposit = by_name.get(("event", "Deposit"), DEPOSIT_EVENT_ABI)
        withdraw = by_name.get(("event", "Withdraw"), WITHDRAW_EVENT_ABI)
        _check_event_shape(deposit, DEPOSIT_EVENT_ABI)
        _check_event_shape(withdraw, WITHDRAW_EVENT_ABI)

        state = [by_name[("function", name)] for name in ("totalAssets", "totalSupply") if ("function", name) in by_name]
        if len(state) != 2:
            state = VAULT_STATE_ABI
        return cls(deposit, withdraw, state)


def _check_event_shape(entry: Dict[str, Any], expected: Dict[str, Any]) -> None:
    got = [(i.get("type"), bool(i.get("indexed"))) for i in entry.get("inputs", [])]
    want = [(i["type"], i["indexed"]) for i in expected["inputs"]]
    if got != want:
        raise FatalConfigError(
            f"ABI event {expected['name']} has inputs {got}, expected ERC-4626 layout {want}"
        )
