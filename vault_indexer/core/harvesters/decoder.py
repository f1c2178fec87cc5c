"""
Event decoder: raw vault logs -> DepositEvent / WithdrawEvent.

Fails closed. Anything that is not one of the two known shapes, or does not
decode against them, comes back as `Unrecognized` and is logged, never raised.
"""

import logging
from typing import Any, Dict, Mapping, Union

from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3
from web3._utils.events import get_event_data
from web3.exceptions import Web3Exception

from vault_indexer.core.abi import DEPOSIT_TOPIC0, WITHDRAW_TOPIC0, VaultInterface
from vault_indexer.core.errors import DecodeMismatch
from vault_indexer.core.types import BlockRef, DepositEvent, Unrecognized, VaultEvent, WithdrawEvent, to_hex

logger = logging.getLogger(__name__)

DecodeResult = Union[DepositEvent, WithdrawEvent, Unrecognized]

_DECODE_ERRORS = (Web3Exception, DecodingError, ValueError, TypeError, KeyError, IndexError)


class EventDecoder:
    def __init__(self, vault_address: str, interface: VaultInterface = None):
        self.vault_address = vault_address.lower()
        self.interface = interface or VaultInterface()
        self._codec = Web3().codec

    def decode(self, raw: Mapping[str, Any]) -> DecodeResult:
        try:
            return self.decode_strict(raw)
        except DecodeMismatch as exc:
            verdict = Unrecognized(str(exc), _safe_int(raw.get("blockNumber")), _safe_int(raw.get("logIndex")))
            logger.warning(
                "Dropping log at block %s index %s: %s", verdict.block_number, verdict.log_index, verdict.reason
            )
            return verdict

    def decode_strict(self, raw: Mapping[str, Any]) -> VaultEvent:
        """Decode or raise `DecodeMismatch`."""
        try:
            log = _normalize_log(raw)
        except _DECODE_ERRORS as exc:
            raise DecodeMismatch(f"malformed log entry: {exc}") from exc

        if log["address"].lower() != self.vault_address:
            raise DecodeMismatch(f"log emitted by {log['address']}, not the vault")
        if not log["topics"]:
            raise DecodeMismatch("anonymous log without topics")

        topic0 = to_hex(log["topics"][0])
        event_abi = self.interface.topics.get(topic0)
        if event_abi is None:
            raise DecodeMismatch(f"unknown topic {topic0}")

        try:
            evt = get_event_data(self._codec, event_abi, log)
        except _DECODE_ERRORS as exc:
            raise DecodeMismatch(f"{event_abi['name']} payload does not decode: {exc}") from exc

        a = evt["args"]
        block = BlockRef(int(log["blockNumber"]), to_hex(log["blockHash"]))
        tx_hash = to_hex(log["transactionHash"])
        log_index = int(log["logIndex"])
        if topic0 == DEPOSIT_TOPIC0:
            return DepositEvent(
                block=block, log_index=log_index, tx_hash=tx_hash,
                sender=a["sender"], owner=a["owner"],
                assets=int(a["assets"]), shares=int(a["shares"]),
            )
        if topic0 == WITHDRAW_TOPIC0:
            return WithdrawEvent(
                block=block, log_index=log_index, tx_hash=tx_hash,
                sender=a["sender"], receiver=a["receiver"], owner=a["owner"],
                assets=int(a["assets"]), shares=int(a["shares"]),
            )
        raise DecodeMismatch(f"unhandled topic {topic0}")


def _normalize_log(raw: Mapping[str, Any]) -> Dict[str, Any]:
    # Subscription payloads carry HexBytes, replayed JSON may carry hex strings.
    return {
        "address": str(raw["address"]),
        "topics": [HexBytes(t) for t in raw.get("topics") or []],
        "data": HexBytes(raw.get("data") or b""),
        "blockNumber": int(raw["blockNumber"]),
        "blockHash": HexBytes(raw["blockHash"]),
        "transactionHash": HexBytes(raw["transactionHash"]),
        "transactionIndex": int(raw.get("transactionIndex") or 0),
        "logIndex": int(raw["logIndex"]),
    }


def _safe_int(value: Any):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
