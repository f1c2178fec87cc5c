"""
Reconciliation engine.

Merges two asynchronous inputs, vault logs and per-block state samples, into
one per-block timeline and decides when a block is safe to persist.

Per (number, hash) record lifecycle:

    Pending --(header seen + state sampled)--> Provisional --(head - number > N)--> Finalized
       \\                                           |
        `----------------(fork wins)---------------'--> Retracted

The engine is a synchronous state machine: `apply(message)` mutates the
timeline and returns the actions the caller must carry out (sample a block,
replay a range, persist a finalized block). It is owned by a single consumer,
so nothing here is locked.

Reorgs are detected through parent-hash linkage between neighbouring
canonical headers, through live heads that do not extend the current tip, and
through logs the node delivers with `removed: true`. A retraction only flips
canonicality. Data stored under a given block hash is immutable, so a record
that comes back to the canonical chain is reinstated as it was.

After a feed reconnect every unfinalized height is replayed, not just the
missing ones, since a header seen before the drop may have lost its logs.
Nothing finalizes past a height until a replay covering it has completed.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple, Union

from vault_indexer.core.errors import ConsistencyError
from vault_indexer.core.types import (
    BlockRef,
    FinalizedBlock,
    Header,
    ResumedAfterGap,
    VaultEvent,
    VaultState,
)

logger = logging.getLogger(__name__)


class BlockStatus(str, Enum):
    PENDING = "pending"
    PROVISIONAL = "provisional"
    FINALIZED = "finalized"
    RETRACTED = "retracted"


# ---------------- Inbox messages ----------------

@dataclass(frozen=True)
class ObservedEvent:
    event: VaultEvent
    removed: bool = False


@dataclass(frozen=True)
class StateSampled:
    state: VaultState


@dataclass(frozen=True)
class SampleFailed:
    block: BlockRef
    error: str


@dataclass(frozen=True)
class ReplayCompleted:
    start: int
    end: int


@dataclass(frozen=True)
class ReplayFailed:
    start: int
    end: int
    error: str


Message = Union[
    Header, ObservedEvent, StateSampled, SampleFailed, ReplayCompleted, ReplayFailed, ResumedAfterGap,
]


# ---------------- Actions ----------------

@dataclass(frozen=True)
class RequestSample:
    block: BlockRef


@dataclass(frozen=True)
class RequestReplay:
    start: int
    end: int


@dataclass(frozen=True)
class Finalize:
    record: FinalizedBlock


@dataclass(frozen=True)
class Retract:
    block: BlockRef
    reason: str


Action = Union[RequestSample, RequestReplay, Finalize, Retract]


@dataclass
class BlockRecord:
    block: BlockRef
    parent_hash: Optional[str] = None
    timestamp: Optional[int] = None
    header_seen: bool = False
    events: Dict[int, VaultEvent] = field(default_factory=dict)
    state: Optional[VaultState] = None
    status: BlockStatus = BlockStatus.PENDING
    sample_inflight: bool = False
    stalled_at_head: Optional[int] = None


class Timeline:
    """Records keyed by height, then hash; at most one canonical hash per height."""

    def __init__(self):
        self._records: Dict[int, Dict[str, BlockRecord]] = {}
        self._canonical: Dict[int, str] = {}

    def get(self, ref: BlockRef) -> Optional[BlockRecord]:
        return self._records.get(ref.number, {}).get(ref.hash)

    def get_or_create(self, ref: BlockRef) -> BlockRecord:
        at_height = self._records.setdefault(ref.number, {})
        record = at_height.get(ref.hash)
        if record is None:
            record = at_height[ref.hash] = BlockRecord(ref)
        return record

    def canonical(self, number: int) -> Optional[BlockRecord]:
        h = self._canonical.get(number)
        return self._records[number][h] if h is not None else None

    def is_canonical(self, record: BlockRecord) -> bool:
        return self._canonical.get(record.block.number) == record.block.hash

    def set_canonical(self, ref: BlockRef) -> Optional[BlockRecord]:
        """Point the height at `ref`; return the record it displaced, if any."""
        previous = self.canonical(ref.number)
        self.get_or_create(ref)
        self._canonical[ref.number] = ref.hash
        if previous is not None and previous.block.hash != ref.hash:
            return previous
        return None

    def clear_canonical(self, number: int) -> None:
        self._canonical.pop(number, None)

    def canonical_heights_above(self, number: int) -> List[int]:
        return sorted(n for n in self._canonical if n > number)

    def pop_height(self, number: int) -> Dict[str, BlockRecord]:
        self._canonical.pop(number, None)
        return self._records.pop(number, {})

    def drop_below(self, number: int) -> int:
        stale = [n for n in self._records if n < number]
        for n in stale:
            self.pop_height(n)
        return len(stale)


class ReconciliationEngine:
    def __init__(
        self,
        confirmation_depth: int = 12,
        stall_retry_blocks: int = 10,
        last_finalized: Optional[BlockRef] = None,
        recent_window: int = 256,
    ):
        self.depth = confirmation_depth
        self.stall_retry_blocks = stall_retry_blocks
        self.timeline = Timeline()
        self.head: Optional[int] = None
        self.last_final: Optional[BlockRef] = last_finalized
        self.next_final: Optional[int] = last_finalized.number + 1 if last_finalized else None
        self._recent_window = max(recent_window, confirmation_depth + 1)
        self._recent_final: "OrderedDict[int, FinalizedBlock]" = OrderedDict()
        self._replaying: Set[int] = set()
        # heights whose logs may be incomplete until a replay covering them completes
        self._needs_replay: Set[int] = set()
        self._stalled: Set[BlockRef] = set()

    # ---------------- Public API ----------------

    def apply(self, message: Message) -> List[Action]:
        if isinstance(message, Header):
            return self._on_header(message)
        if isinstance(message, ObservedEvent):
            return self._on_event(message.event, message.removed)
        if isinstance(message, StateSampled):
            return self._on_state(message.state)
        if isinstance(message, SampleFailed):
            return self._on_sample_failed(message.block, message.error)
        if isinstance(message, ReplayCompleted):
            return self._on_replay_completed(message)
        if isinstance(message, ReplayFailed):
            return self._on_replay_failed(message)
        if isinstance(message, ResumedAfterGap):
            return self._on_resumed(message)
        raise TypeError(f"unsupported message {message!r}")

    @property
    def stalled_blocks(self) -> List[BlockRef]:
        return sorted(self._stalled)

    def status_of(self, ref: BlockRef) -> Optional[BlockStatus]:
        record = self.timeline.get(ref)
        if record is not None:
            return record.status
        fin = self._recent_final.get(ref.number)
        if fin is not None and fin.block == ref:
            return BlockStatus.FINALIZED
        return None

    # ---------------- Headers ----------------

    def _on_header(self, header: Header) -> List[Action]:
        ref = header.block
        n = ref.number
        actions: List[Action] = []

        if self.next_final is None:
            self.next_final = n
            dropped = self.timeline.drop_below(n)
            logger.info("Ingestion starts at block %s (dropped %d earlier partial records)", ref, dropped)

        if n < self.next_final:
            self._check_against_finalized(ref)
            return actions

        current = self.timeline.canonical(n)
        if current is not None and current.block.hash == ref.hash and current.header_seen:
            logger.debug("Duplicate header %s", ref)
            return actions

        displaced = self.timeline.set_canonical(ref)
        if displaced is not None:
            actions += self._retract(displaced, f"replaced by {ref.hash[:10]} at the same height")

        record = self.timeline.get_or_create(ref)
        if record.status == BlockStatus.RETRACTED:
            logger.info("Block %s is canonical again; reinstating", ref)
            record.status = BlockStatus.PENDING
        record.parent_hash = header.parent_hash
        record.timestamp = header.timestamp
        record.header_seen = True

        if not header.replayed:
            if self.head is not None and n <= self.head:
                for k in self.timeline.canonical_heights_above(n):
                    actions += self._retract(self.timeline.canonical(k), f"new head {ref} does not extend it")
            self.head = n
        elif self.head is None or n > self.head:
            self.head = n

        actions += self._check_parent(record)
        actions += self._check_child(record)
        if not header.replayed:
            actions += self._request_missing(self.next_final, n - 1)
            actions += self._retry_stalled()

        if record.state is None and not record.sample_inflight:
            record.sample_inflight = True
            actions.append(RequestSample(ref))
        self._promote(record)
        actions += self._finalize_ready()
        return actions

    def _check_against_finalized(self, ref: BlockRef) -> None:
        known = self._recent_final.get(ref.number)
        if known is None and self.last_final is not None and self.last_final.number == ref.number:
            known_hash = self.last_final.hash
        else:
            known_hash = known.block.hash if known is not None else None
        if known_hash is not None and known_hash != ref.hash:
            raise ConsistencyError(
                f"block {ref} conflicts with finalized {known_hash}: reorg deeper than "
                f"confirmation depth {self.depth}",
                block_number=ref.number,
            )
        logger.debug("Header %s is at or below the finalized horizon; ignoring", ref)

    def _check_parent(self, record: BlockRecord) -> List[Action]:
        n = record.block.number
        if n == self.next_final:
            if self.last_final is not None and record.parent_hash != self.last_final.hash:
                raise ConsistencyError(
                    f"block {record.block} has parent {record.parent_hash}, but finalized "
                    f"block {self.last_final} is its predecessor",
                    block_number=n,
                )
            return []
        prev = self.timeline.canonical(n - 1)
        if prev is None or prev.block.hash == record.parent_hash:
            return []
        actions = self._retract(prev, f"child {record.block} names parent {record.parent_hash[:10]}")
        return actions + self._request_replay(n - 1, n - 1)

    def _check_child(self, record: BlockRecord) -> List[Action]:
        n = record.block.number
        child = self.timeline.canonical(n + 1)
        if child is None or child.parent_hash == record.block.hash:
            return []
        actions = self._retract(child, f"parent {record.block} replaced")
        return actions + self._request_replay(n + 1, n + 1)

    # ---------------- Events ----------------

    def _on_event(self, event: VaultEvent, removed: bool) -> List[Action]:
        ref = event.block
        n = ref.number
        if self.next_final is not None and n < self.next_final:
            self._check_event_against_finalized(event, removed)
            return []

        record = self.timeline.get_or_create(ref)
        if removed:
            if self.timeline.is_canonical(record):
                actions = self._retract(record, f"node removed log {event.tx_hash}:{event.log_index}")
                return actions + self._request_replay(n, n)
            return []

        existing = record.events.get(event.log_index)
        if existing is None:
            record.events[event.log_index] = event
            logger.debug("%s %s:%d attached to %s", event.kind, event.tx_hash, event.log_index, ref)
        elif existing == event:
            logger.debug("Duplicate delivery of %s:%d ignored", event.tx_hash, event.log_index)
        else:
            raise ConsistencyError(
                f"two different events at block {ref} logIndex {event.log_index}: "
                f"{existing.tx_hash} vs {event.tx_hash}",
                block_number=n,
            )
        return []

    def _check_event_against_finalized(self, event: VaultEvent, removed: bool) -> None:
        fin = self._recent_final.get(event.block.number)
        if fin is None or fin.block != event.block:
            logger.debug("Event %s:%d below the finalized horizon ignored", event.tx_hash, event.log_index)
            return
        if removed:
            raise ConsistencyError(
                f"node removed log {event.tx_hash}:{event.log_index} from finalized block {fin.block}",
                block_number=fin.block.number,
            )
        if event not in fin.events:
            raise ConsistencyError(
                f"event {event.tx_hash}:{event.log_index} arrived after block {fin.block} was finalized",
                block_number=fin.block.number,
            )

    # ---------------- State samples ----------------

    def _on_state(self, state: VaultState) -> List[Action]:
        record = self.timeline.get(state.block)
        self._stalled.discard(state.block)
        if record is None:
            logger.debug("State for %s no longer tracked; dropped", state.block)
            return []
        record.sample_inflight = False
        record.stalled_at_head = None
        if record.state is not None and record.state != state:
            raise ConsistencyError(
                f"node returned two different states for block {state.block}", block_number=state.block.number
            )
        record.state = state
        self._promote(record)
        return self._finalize_ready()

    def _on_sample_failed(self, block: BlockRef, error: str) -> List[Action]:
        record = self.timeline.get(block)
        if record is None:
            return []
        record.sample_inflight = False
        if record.status == BlockStatus.RETRACTED:
            return []
        record.stalled_at_head = self.head
        self._stalled.add(block)
        logger.error("Block %s stalled: vault state unavailable (%s). Finalization waits on it.", block, error)
        return []

    def _retry_stalled(self) -> List[Action]:
        actions: List[Action] = []
        for ref in sorted(self._stalled):
            record = self.timeline.get(ref)
            if record is None or record.status == BlockStatus.RETRACTED:
                self._stalled.discard(ref)
                continue
            if record.sample_inflight or record.stalled_at_head is None:
                continue
            if self.head - record.stalled_at_head >= self.stall_retry_blocks:
                record.sample_inflight = True
                record.stalled_at_head = self.head
                logger.info("Re-sampling stalled block %s", ref)
                actions.append(RequestSample(ref))
        return actions

    # ---------------- Gaps / replay ----------------

    def _on_resumed(self, message: ResumedAfterGap) -> List[Action]:
        """Refetch every unfinalized height: headers seen before the drop may have lost their logs."""
        if self.next_final is None:
            return []
        hi = message.current_head if message.current_head is not None else self.head
        if hi is None or hi < self.next_final:
            return []
        self._needs_replay.update(range(self.next_final, hi + 1))
        return self._request_missing(self.next_final, hi)

    def _on_replay_completed(self, message: ReplayCompleted) -> List[Action]:
        for n in range(message.start, message.end + 1):
            self._replaying.discard(n)
            self._needs_replay.discard(n)
        logger.debug("Replay of %d-%d complete", message.start, message.end)
        return self._finalize_ready()

    def _on_replay_failed(self, message: ReplayFailed) -> List[Action]:
        for n in range(message.start, message.end + 1):
            self._replaying.discard(n)
            self._needs_replay.add(n)
        logger.warning("Replay of %d-%d failed (%s); will retry on a later head",
                       message.start, message.end, message.error)
        return []

    def _request_missing(self, lo: int, hi: int) -> List[Action]:
        actions: List[Action] = []
        run_start = None
        for k in range(lo, hi + 1):
            missing = (self.timeline.canonical(k) is None or k in self._needs_replay) and k not in self._replaying
            if missing and run_start is None:
                run_start = k
            elif not missing and run_start is not None:
                actions += self._request_replay(run_start, k - 1)
                run_start = None
        if run_start is not None:
            actions += self._request_replay(run_start, hi)
        return actions

    def _request_replay(self, start: int, end: int) -> List[Action]:
        self._replaying.update(range(start, end + 1))
        logger.info("Requesting replay of blocks %d-%d", start, end)
        return [RequestReplay(start, end)]

    # ---------------- Lifecycle ----------------

    def _retract(self, record: BlockRecord, reason: str) -> List[Action]:
        if record.status == BlockStatus.FINALIZED:
            raise ConsistencyError(f"refusing to retract finalized block {record.block}: {reason}",
                                   block_number=record.block.number)
        if self.timeline.is_canonical(record):
            self.timeline.clear_canonical(record.block.number)
        if record.status == BlockStatus.RETRACTED:
            return []
        record.status = BlockStatus.RETRACTED
        self._stalled.discard(record.block)
        logger.info("Retracted block %s: %s", record.block, reason)
        return [Retract(record.block, reason)]

    def _promote(self, record: BlockRecord) -> None:
        if (
            record.status == BlockStatus.PENDING
            and record.header_seen
            and record.state is not None
            and self.timeline.is_canonical(record)
        ):
            record.status = BlockStatus.PROVISIONAL
            logger.debug("Block %s provisional with %d event(s)", record.block, len(record.events))

    def _finalize_ready(self) -> List[Action]:
        actions: List[Action] = []
        while self.head is not None and self.next_final is not None and self.head - self.next_final > self.depth:
            if self.next_final in self._replaying or self.next_final in self._needs_replay:
                break
            record = self.timeline.canonical(self.next_final)
            if record is None or record.status != BlockStatus.PROVISIONAL:
                break
            finalized = self._seal(record)
            self.timeline.pop_height(record.block.number)
            self._remember(finalized)
            self.last_final = record.block
            self.next_final += 1
            actions.append(Finalize(finalized))
            logger.info("Finalized block %s with %d event(s)", record.block, len(finalized.events))
        return actions

    def _seal(self, record: BlockRecord) -> FinalizedBlock:
        if self.last_final is not None and record.parent_hash != self.last_final.hash:
            raise ConsistencyError(
                f"block {record.block} does not extend finalized block {self.last_final}",
                block_number=record.block.number,
            )
        if record.state.block != record.block:
            raise ConsistencyError(f"state {record.state.block} attached to block {record.block}",
                                   block_number=record.block.number)
        events: List[VaultEvent] = []
        seen: Set[Tuple[str, int]] = set()
        for log_index in sorted(record.events):
            event = record.events[log_index]
            if event.block != record.block or event.key in seen:
                raise ConsistencyError(f"event {event.tx_hash}:{log_index} does not belong to {record.block}",
                                       block_number=record.block.number)
            seen.add(event.key)
            events.append(event)
        record.status = BlockStatus.FINALIZED
        return FinalizedBlock(
            block=record.block,
            parent_hash=record.parent_hash,
            timestamp=record.timestamp,
            events=tuple(events),
            state=record.state,
        )

    def _remember(self, finalized: FinalizedBlock) -> None:
        self._recent_final[finalized.block.number] = finalized
        while len(self._recent_final) > self._recent_window:
            self._recent_final.popitem(last=False)
