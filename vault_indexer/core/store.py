"""
Durable store for finalized blocks.

Layout under `root_dir`:

    events/blocks_<a>_<b>.pkl   sealed chunk: pickled DataFrame of vault events of blocks a..b
    states/blocks_<a>_<b>.pkl   sealed chunk: one vault state row per block a..b
    events/tail.pkl             events of the blocks finalized since the last sealed chunk
    states/tail.pkl             state rows of the blocks finalized since the last sealed chunk
    checkpoint.json             commit record: last finalized block, last sealed block, counters

Every file is written to a temp file in the same directory, fsynced and then
`os.replace`d into place, so a crash leaves either the old file or the new one.

`checkpoint.json` is the commit marker. A block is visible to readers only
once the checkpoint names it: tail rows above `last_finalized_block` and
sealed chunks above `sealed_through` are leftovers of an append that never
committed, and are ignored (and cleaned up on `open()`).

Every `chunk_blocks` finalized blocks the tail is rolled into a sealed
`blocks_<a>_<b>.pkl` chunk, so the number of files grows with the chain
length divided by `chunk_blocks`, not with the chain length.

Only finalized blocks are ever written, in increasing block order, so nothing
here needs to be undone.
"""

import json
import logging
import os
import pickle
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import pandas as pd

from vault_indexer.core.errors import ConsistencyError
from vault_indexer.core.types import BlockRef, FinalizedBlock

logger = logging.getLogger(__name__)

EVENT_COLUMNS = [
    "eventType", "blockNumber", "blockHash", "parentHash", "timestamp", "logIndex",
    "transactionHash", "sender", "receiver", "owner", "assets", "shares",
]
STATE_COLUMNS = ["blockNumber", "blockHash", "parentHash", "timestamp", "totalAssets", "totalSupply"]

CHECKPOINT_NAME = "checkpoint.json"
TAIL_NAME = "tail.pkl"
_TMP_PREFIX = ".tmp_"


def chunk_name(first_block: int, last_block: int) -> str:
    return f"blocks_{first_block}_{last_block}.pkl"


def chunk_range(path: Path) -> Tuple[int, int]:
    parts = path.stem.split("_")[1:3]
    return tuple(int(part) if part.lstrip("-").isdigit() else 0 for part in parts)


def atomic_write_json(path: str, payload: Dict[str, Any]):
    d = os.path.dirname(os.path.abspath(path)) or "."
    fd, tmp = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=d, text=True)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(payload, f, separators=(",", ":"), sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except Exception:
        _remove_quietly(tmp)
        raise


def atomic_write_pickle(df: pd.DataFrame, path: str):
    d = os.path.dirname(os.path.abspath(path)) or "."
    fd, tmp = tempfile.mkstemp(prefix=_TMP_PREFIX, suffix=".pkl", dir=d)
    try:
        with os.fdopen(fd, "wb") as f:
            df.to_pickle(f, compression=None, protocol=pickle.HIGHEST_PROTOCOL)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except Exception:
        _remove_quietly(tmp)
        raise


def _remove_quietly(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def _empty(columns: List[str]) -> pd.DataFrame:
    return pd.DataFrame(columns=columns)


def _concat(frames: List[pd.DataFrame], columns: List[str]) -> pd.DataFrame:
    frames = [f for f in frames if not f.empty]
    if not frames:
        return _empty(columns)
    return pd.concat(frames, ignore_index=True)


class DurableStore:
    def __init__(self, root_dir: str, vault_address: str, chunk_blocks: int = 1000):
        self.root = Path(root_dir)
        self.events_dir = self.root / "events"
        self.states_dir = self.root / "states"
        self.checkpoint_path = self.root / CHECKPOINT_NAME
        self.vault_address = vault_address
        self.chunk_blocks = max(int(chunk_blocks), 1)
        self._checkpoint: Dict[str, Any] = {}
        self._tail_events = _empty(EVENT_COLUMNS)
        self._tail_states = _empty(STATE_COLUMNS)
        self._sealed_event_keys: Optional[Set[Tuple[str, int]]] = None

    def open(self) -> "DurableStore":
        for d in (self.root, self.events_dir, self.states_dir):
            d.mkdir(parents=True, exist_ok=True)
            for leftover in d.glob(f"{_TMP_PREFIX}*"):
                logger.warning("Removing partial write %s", leftover)
                leftover.unlink()

        if self.checkpoint_path.exists():
            with open(self.checkpoint_path, "r") as f:
                self._checkpoint = json.load(f)
            stored_vault = self._checkpoint.get("vault")
            if stored_vault and stored_vault.lower() != self.vault_address.lower():
                raise ConsistencyError(f"store at {self.root} belongs to vault {stored_vault}")

        sealed = self._sealed_through
        for d in (self.events_dir, self.states_dir):
            for path in self._chunks(d):
                if sealed is None or chunk_range(path)[1] > sealed:
                    logger.warning("Removing uncommitted chunk %s", path)
                    path.unlink()

        self._tail_events = self._load_tail(self.events_dir / TAIL_NAME, EVENT_COLUMNS)
        self._tail_states = self._load_tail(self.states_dir / TAIL_NAME, STATE_COLUMNS)
        logger.info(
            "Store opened at %s: %d state row(s), last finalized %s, sealed through %s",
            self.root, int(self._checkpoint.get("states_written", 0)), self.last_finalized(), sealed,
        )
        return self

    def _load_tail(self, path: Path, columns: List[str]) -> pd.DataFrame:
        if not path.exists():
            return _empty(columns)
        df = pd.read_pickle(path)
        committed = df[self._committed_mask(df["blockNumber"])]
        if len(committed) != len(df):
            logger.warning("Ignoring %d uncommitted row(s) in %s", len(df) - len(committed), path)
        return committed.reset_index(drop=True)

    def _committed_mask(self, numbers: pd.Series) -> pd.Series:
        last = self._checkpoint.get("last_finalized_block")
        if last is None:
            return pd.Series(False, index=numbers.index)
        mask = numbers.astype(int) <= int(last)
        sealed = self._sealed_through
        if sealed is not None:
            mask &= numbers.astype(int) > sealed
        return mask

    # ---------------- Writes ----------------

    def append(self, record: FinalizedBlock) -> bool:
        """Persist one finalized block. Returns False when it was already stored."""
        n = record.block.number
        last = self.last_finalized()
        if last is not None and n <= last.number:
            stored = self._stored_hash(n)
            if stored is None:
                raise ConsistencyError(
                    f"block {n} arrived after block {last.number} was persisted", block_number=n
                )
            if stored != record.block.hash:
                raise ConsistencyError(
                    f"block {n} already persisted as {stored}, refusing {record.block.hash}", block_number=n
                )
            logger.debug("Block %s already persisted; skipping", record.block)
            return False

        new_events = pd.DataFrame([self._event_row(record, e) for e in record.events], columns=EVENT_COLUMNS)
        new_events = new_events.sort_values("logIndex", kind="stable")
        state_row = dict(record.state.as_row(), parentHash=record.parent_hash, timestamp=record.timestamp)
        events = _concat([self._tail_events, new_events], EVENT_COLUMNS).reset_index(drop=True)
        states = _concat([self._tail_states, pd.DataFrame([state_row], columns=STATE_COLUMNS)], STATE_COLUMNS)

        ckpt = dict(self._checkpoint)
        ckpt["vault"] = self.vault_address
        ckpt["last_finalized_block"] = n
        ckpt["last_finalized_hash"] = record.block.hash
        ckpt["events_written"] = int(ckpt.get("events_written", 0)) + len(new_events)
        ckpt["states_written"] = int(ckpt.get("states_written", 0)) + 1

        seal = len(states) >= self.chunk_blocks
        name = chunk_name(int(states["blockNumber"].iloc[0]), n)
        sealed_paths = [self.events_dir / name, self.states_dir / name]
        try:
            if seal:
                if not events.empty:
                    atomic_write_pickle(events, str(sealed_paths[0]))
                atomic_write_pickle(states, str(sealed_paths[1]))
                ckpt["sealed_through"] = n
            else:
                atomic_write_pickle(events, str(self.events_dir / TAIL_NAME))
                atomic_write_pickle(states, str(self.states_dir / TAIL_NAME))
            # commit point
            atomic_write_json(str(self.checkpoint_path), ckpt)
        except Exception:
            if seal:
                for path in sealed_paths:
                    _remove_quietly(path)
            raise
        self._checkpoint = ckpt

        if seal:
            for d in (self.events_dir, self.states_dir):
                _remove_quietly(d / TAIL_NAME)
            self._tail_events = _empty(EVENT_COLUMNS)
            self._tail_states = _empty(STATE_COLUMNS)
            if self._sealed_event_keys is not None:
                self._sealed_event_keys.update(zip(events["transactionHash"], events["logIndex"].astype(int)))
            logger.info("Sealed chunk %s (%d state row(s), %d event(s))", name, len(states), len(events))
        else:
            self._tail_events = events
            self._tail_states = states.reset_index(drop=True)
        return True

    def retract(self, block_number: int) -> None:
        if self._stored_hash(block_number) is not None:
            raise ConsistencyError(
                f"cannot retract block {block_number}: it is already persisted", block_number=block_number
            )
        logger.debug("Retract of unpersisted block %d: nothing to do", block_number)

    @staticmethod
    def _event_row(record: FinalizedBlock, event) -> Dict[str, Any]:
        return dict(event.as_row(), parentHash=record.parent_hash, timestamp=record.timestamp)

    # ---------------- Reads ----------------

    @property
    def _sealed_through(self) -> Optional[int]:
        value = self._checkpoint.get("sealed_through")
        return int(value) if value is not None else None

    def last_finalized(self) -> Optional[BlockRef]:
        """Highest committed block, as recorded in the checkpoint."""
        n = self._checkpoint.get("last_finalized_block")
        if n is None:
            return None
        return BlockRef(int(n), self._checkpoint["last_finalized_hash"])

    @property
    def checkpoint(self) -> Dict[str, Any]:
        return dict(self._checkpoint)

    def _stored_hash(self, block_number: int) -> Optional[str]:
        last = self.last_finalized()
        if last is None or block_number > last.number:
            return None
        if block_number == last.number:
            return last.hash
        for states in [self._tail_states] + [
            pd.read_pickle(p) for p in self._sealed_chunks(self.states_dir)
            if chunk_range(p)[0] <= block_number <= chunk_range(p)[1]
        ]:
            hit = states[states["blockNumber"].astype(int) == block_number]
            if not hit.empty:
                return str(hit["blockHash"].iloc[0])
        return None

    def has_event(self, tx_hash: str, log_index: int) -> bool:
        key = (tx_hash, int(log_index))
        tail_keys = zip(self._tail_events["transactionHash"], self._tail_events["logIndex"].astype(int))
        if key in set(tail_keys):
            return True
        if self._sealed_event_keys is None:
            sealed = self._merge(self.events_dir, EVENT_COLUMNS)
            self._sealed_event_keys = set(zip(sealed["transactionHash"], sealed["logIndex"].astype(int)))
        return key in self._sealed_event_keys

    def read_events(self) -> pd.DataFrame:
        df = _concat([self._merge(self.events_dir, EVENT_COLUMNS), self._tail_events], EVENT_COLUMNS)
        return df.sort_values(["blockNumber", "logIndex"], kind="stable").reset_index(drop=True)

    def read_states(self) -> pd.DataFrame:
        df = _concat([self._merge(self.states_dir, STATE_COLUMNS), self._tail_states], STATE_COLUMNS)
        return df.sort_values("blockNumber", kind="stable").reset_index(drop=True)

    def _merge(self, directory: Path, columns: List[str]) -> pd.DataFrame:
        """Merge the sealed chunks of one stream, skipping any the checkpoint does not cover."""
        combined_df: Optional[pd.DataFrame] = None
        for chunk_path in self._sealed_chunks(directory):
            df_chunk = pd.read_pickle(chunk_path)
            if combined_df is None:
                combined_df = df_chunk
            else:
                combined_df = pd.concat([combined_df, df_chunk], ignore_index=True)
        if combined_df is None:
            combined_df = _empty(columns)
        return combined_df

    @staticmethod
    def _chunks(directory: Path) -> List[Path]:
        return sorted(directory.glob("blocks_*_*.pkl"), key=chunk_range)

    def _sealed_chunks(self, directory: Path) -> List[Path]:
        sealed = self._sealed_through
        if sealed is None:
            return []
        return [p for p in self._chunks(directory) if chunk_range(p)[1] <= sealed]
