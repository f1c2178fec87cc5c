"""
Domain records shared by the feed, decoder, sampler, engine and store.

Hashes and addresses are normalised to 0x-prefixed strings so that records
compare and hash the same way regardless of whether they came from the
websocket subscription (HexBytes) or a replay query.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union

from web3 import Web3


def to_hex(value: Any) -> str:
    """Normalise bytes / HexBytes / hex strings to lowercase 0x-prefixed hex."""
    if isinstance(value, str):
        s = value.strip().lower()
        return s if s.startswith("0x") else "0x" + s
    return Web3.to_hex(value).lower()


@dataclass(frozen=True, order=True)
class BlockRef:
    number: int
    hash: str

    def __str__(self) -> str:
        return f"#{self.number} ({self.hash[:10]})"


@dataclass(frozen=True)
class Header:
    """A block header as observed live (newHeads) or fetched during replay."""

    block: BlockRef
    parent_hash: str
    timestamp: int
    replayed: bool = False

    @classmethod
    def from_web3(cls, raw: Mapping[str, Any], replayed: bool = False) -> "Header":
        return cls(
            block=BlockRef(int(raw["number"]), to_hex(raw["hash"])),
            parent_hash=to_hex(raw["parentHash"]),
            timestamp=int(raw["timestamp"]),
            replayed=replayed,
        )


@dataclass(frozen=True)
class LogEntry:
    """A raw log as delivered by the node, not yet decoded."""

    raw: Mapping[str, Any]
    replayed: bool = False

    @property
    def removed(self) -> bool:
        return bool(self.raw.get("removed", False))


@dataclass(frozen=True)
class ResumedAfterGap:
    """Emitted by the feed after a reconnect; blocks after `last_seen_block` may be missing."""

    last_seen_block: int
    current_head: Optional[int] = None


@dataclass(frozen=True)
class DepositEvent:
    kind: ClassVar[str] = "Deposit"

    block: BlockRef
    log_index: int
    tx_hash: str
    sender: str
    owner: str
    assets: int
    shares: int

    @property
    def key(self) -> Tuple[str, int]:
        return (self.tx_hash, self.log_index)

    def as_row(self) -> Dict[str, Any]:
        return {
            "eventType": self.kind,
            "blockNumber": self.block.number,
            "blockHash": self.block.hash,
            "logIndex": self.log_index,
            "transactionHash": self.tx_hash,
            "sender": self.sender,
            "receiver": None,
            "owner": self.owner,
            "assets": self.assets,
            "shares": self.shares,
        }


@dataclass(frozen=True)
class WithdrawEvent:
    kind: ClassVar[str] = "Withdraw"

    block: BlockRef
    log_index: int
    tx_hash: str
    sender: str
    receiver: str
    owner: str
    assets: int
    shares: int

    @property
    def key(self) -> Tuple[str, int]:
        return (self.tx_hash, self.log_index)

    def as_row(self) -> Dict[str, Any]:
        return {
            "eventType": self.kind,
            "blockNumber": self.block.number,
            "blockHash": self.block.hash,
            "logIndex": self.log_index,
            "transactionHash": self.tx_hash,
            "sender": self.sender,
            "receiver": self.receiver,
            "owner": self.owner,
            "assets": self.assets,
            "shares": self.shares,
        }


VaultEvent = Union[DepositEvent, WithdrawEvent]


@dataclass(frozen=True)
class Unrecognized:
    """Decoder verdict for a log that is neither a Deposit nor a Withdraw."""

    reason: str
    block_number: Optional[int] = None
    log_index: Optional[int] = None


@dataclass(frozen=True)
class VaultState:
    block: BlockRef
    total_assets: int
    total_supply: int

    def as_row(self) -> Dict[str, Any]:
        return {
            "blockNumber": self.block.number,
            "blockHash": self.block.hash,
            "totalAssets": self.total_assets,
            "totalSupply": self.total_supply,
        }


@dataclass(frozen=True)
class FinalizedBlock:
    """Everything the store persists for one canonical, confirmed block."""

    block: BlockRef
    parent_hash: str
    timestamp: int
    events: Tuple[VaultEvent, ...]
    state: VaultState
