"""
Unit tests for the reconciliation engine.

Tests:
- Block lifecycle and confirmation depth
- Ordering and de-duplication under reordered delivery
- Reorg handling (competing heads, parent mismatch, removed logs)
- Gap replay and stalled samples
- Consistency violations
"""

import pytest

from chain_fixtures import EngineHarness, bhash, deposit, header, ref, state_for, withdraw
from vault_indexer.core.engine import (
    BlockStatus,
    ObservedEvent,
    ReconciliationEngine,
    ReplayCompleted,
    ReplayFailed,
    StateSampled,
)
from vault_indexer.core.errors import ConsistencyError
from vault_indexer.core.types import BlockRef, ResumedAfterGap, VaultState


def make_harness(depth=3, **kwargs):
    engine_kwargs = {k: kwargs.pop(k) for k in ("stall_retry_blocks", "last_finalized") if k in kwargs}
    return EngineHarness(ReconciliationEngine(confirmation_depth=depth, **engine_kwargs), **kwargs)


class TestLifecycle:
    """Pending -> Provisional -> Finalized."""

    def test_header_requests_state_sample(self):
        h = make_harness(auto_sample=False)
        h.apply(header(100))
        assert h.samples == [ref(100)]
        assert h.engine.status_of(ref(100)) == BlockStatus.PENDING

    def test_provisional_needs_header_and_state(self):
        h = make_harness(auto_sample=False)
        h.apply(header(100))
        h.apply(ObservedEvent(deposit(100)))
        assert h.engine.status_of(ref(100)) == BlockStatus.PENDING
        h.complete()
        assert h.engine.status_of(ref(100)) == BlockStatus.PROVISIONAL

    def test_block_without_events_finalizes(self):
        h = make_harness()
        for n in range(100, 105):
            h.apply(header(n))
        assert [f.block for f in h.finalized] == [ref(100)]
        assert h.finalized[0].events == ()

    def test_finalize_only_when_buried_deeper_than_depth(self):
        h = make_harness(depth=3)
        for n in range(100, 104):
            h.apply(header(n))
        assert h.finalized == []
        h.apply(header(104))
        assert [f.block.number for f in h.finalized] == [100]

    def test_zero_depth_finalizes_on_next_head(self):
        h = make_harness(depth=0)
        h.apply(header(100))
        assert h.finalized == []
        h.apply(header(101))
        assert [f.block.number for f in h.finalized] == [100]

    def test_deposit_and_state_share_block_ref(self):
        """Deposit(1000, 950) plus state(50000, 47500) at block 1000."""
        h = make_harness(states={1000: VaultState(ref(1000), 50000, 47500)})
        h.apply(header(1000))
        h.apply(ObservedEvent(deposit(1000, assets=1000, shares=950)))
        for n in range(1001, 1005):
            h.apply(header(n))

        record = h.finalized[0]
        assert record.block == ref(1000)
        assert len(record.events) == 1
        event = record.events[0]
        assert (event.assets, event.shares) == (1000, 950)
        assert (record.state.total_assets, record.state.total_supply) == (50000, 47500)
        assert event.block == record.state.block == record.block

    def test_events_may_arrive_after_provisional(self):
        h = make_harness()
        h.apply(header(100))
        assert h.engine.status_of(ref(100)) == BlockStatus.PROVISIONAL
        h.apply(ObservedEvent(withdraw(100, log_index=4)))
        for n in range(101, 105):
            h.apply(header(n))
        assert [e.log_index for e in h.finalized[0].events] == [4]

    def test_timestamp_and_parent_carried_from_header(self):
        h = make_harness()
        for n in range(100, 105):
            h.apply(header(n))
        record = h.finalized[0]
        assert record.parent_hash == bhash(99)
        assert record.timestamp == header(100).timestamp


class TestOrdering:
    """Finalized output is block-monotonic with unique keys."""

    def test_reordered_and_duplicated_delivery(self):
        h = make_harness(auto_sample=False)
        h.apply(ObservedEvent(deposit(11, log_index=5)))
        h.apply(header(10))
        h.apply(ObservedEvent(deposit(10, log_index=2)))
        h.apply(header(11))
        h.apply(ObservedEvent(deposit(11, log_index=5)))
        h.apply(ObservedEvent(withdraw(10, log_index=0)))
        h.apply(ObservedEvent(deposit(10, log_index=2)))
        for n in range(12, 17):
            h.apply(header(n))
        h.complete(list(reversed(h.pending_samples)))

        numbers = [f.block.number for f in h.finalized]
        assert numbers == sorted(set(numbers))
        assert numbers == [10, 11, 12]
        keys = [e.key for f in h.finalized for e in f.events]
        assert len(keys) == len(set(keys))
        assert [e.log_index for e in h.finalized[0].events] == [0, 2]
        assert [e.log_index for e in h.finalized[1].events] == [5]

    def test_redelivered_identical_log_kept_once(self):
        h = make_harness()
        h.apply(header(100))
        event = deposit(100)
        h.apply(ObservedEvent(event), ObservedEvent(event), ObservedEvent(event))
        for n in range(101, 105):
            h.apply(header(n))
        assert h.finalized[0].events == (event,)

    def test_duplicate_header_is_ignored(self):
        h = make_harness()
        h.apply(header(100), header(100))
        assert h.samples == [ref(100)]

    def test_late_sample_does_not_reorder_output(self):
        h = make_harness(auto_sample=False)
        for n in range(100, 106):
            h.apply(header(n))
        h.complete([ref(n) for n in range(101, 106)])
        assert h.finalized == []
        h.complete([ref(100)])
        assert [f.block.number for f in h.finalized] == [100, 101]

    def test_conflicting_events_at_same_log_index_halt(self):
        h = make_harness()
        h.apply(header(100))
        h.apply(ObservedEvent(deposit(100, log_index=1, tx="0x" + "aa" * 32)))
        with pytest.raises(ConsistencyError) as exc:
            h.apply(ObservedEvent(deposit(100, log_index=1, tx="0x" + "bb" * 32)))
        assert exc.value.block_number == 100


class TestReorgs:
    """Retractions never reach the finalized output."""

    def test_competing_head_retracts_old_branch(self):
        h = make_harness()
        h.apply(header(100), header(101), header(102))
        h.apply(ObservedEvent(deposit(101)))

        h.apply(header(101, fork=1, parent_fork=0))
        assert ref(101) in h.retracted
        assert ref(102) in h.retracted
        assert h.engine.status_of(ref(101)) == BlockStatus.RETRACTED

        h.apply(header(102, fork=1), header(103, fork=1), header(104, fork=1), header(105, fork=1))
        finalized = {f.block.number: f for f in h.finalized}
        assert finalized[101].block == ref(101, fork=1)
        assert finalized[101].events == ()
        assert all(f.block not in h.retracted for f in h.finalized)

    def test_parent_mismatch_retracts_and_replays_parent(self):
        h = make_harness()
        h.apply(header(100), header(101), header(102))
        h.apply(header(102, fork=1, parent_fork=1))
        assert ref(101) in h.retracted
        assert ref(102) in h.retracted
        assert (101, 101) in h.replays

        h.apply(header(101, fork=1, parent_fork=0, replayed=True))
        assert h.engine.timeline.canonical(101).block == ref(101, fork=1)
        assert h.engine.timeline.canonical(102).block == ref(102, fork=1)

    def test_replayed_block_replacing_parent_retracts_child(self):
        h = make_harness()
        h.apply(header(100), header(101), header(102))
        h.apply(header(101, fork=1, parent_fork=0, replayed=True))
        assert ref(102) in h.retracted
        assert (102, 102) in h.replays

    def test_removed_log_retracts_block_and_requests_replay(self):
        h = make_harness()
        h.apply(header(100), header(101))
        h.apply(ObservedEvent(deposit(101)))
        h.apply(ObservedEvent(deposit(101), removed=True))
        assert h.retracted == [ref(101)]
        assert (101, 101) in h.replays
        assert h.engine.status_of(ref(101)) == BlockStatus.RETRACTED

    def test_reinstated_block_keeps_its_events(self):
        h = make_harness()
        h.apply(header(100), header(101))
        h.apply(ObservedEvent(deposit(101)))
        h.apply(header(101, fork=1, parent_fork=0))
        h.apply(header(101, fork=0))
        assert h.engine.status_of(ref(101)) == BlockStatus.PROVISIONAL
        for n in range(102, 106):
            h.apply(header(n))
        assert h.finalized[1].block == ref(101)
        assert len(h.finalized[1].events) == 1

    def test_state_for_retracted_block_is_not_finalized(self):
        h = make_harness(auto_sample=False)
        h.apply(header(100), header(101))
        h.apply(header(101, fork=1, parent_fork=0))
        h.complete()
        for n in range(102, 106):
            h.apply(header(n, fork=1))
        h.complete()
        assert all(f.block != ref(101) for f in h.finalized)

    def test_reorg_below_finalized_horizon_is_fatal(self):
        h = make_harness()
        for n in range(100, 105):
            h.apply(header(n))
        assert h.finalized[0].block == ref(100)
        with pytest.raises(ConsistencyError):
            h.apply(header(100, fork=1, replayed=True))

    def test_new_event_for_finalized_block_is_fatal(self):
        h = make_harness()
        for n in range(100, 105):
            h.apply(header(n))
        with pytest.raises(ConsistencyError):
            h.apply(ObservedEvent(deposit(100, log_index=9)))

    def test_removed_log_of_finalized_block_is_fatal(self):
        h = make_harness()
        h.apply(header(100))
        h.apply(ObservedEvent(deposit(100)))
        for n in range(101, 105):
            h.apply(header(n))
        h.apply(ObservedEvent(deposit(100)))
        with pytest.raises(ConsistencyError):
            h.apply(ObservedEvent(deposit(100), removed=True))

    def test_conflicting_state_for_same_block_is_fatal(self):
        h = make_harness()
        h.apply(header(100))
        with pytest.raises(ConsistencyError):
            h.apply(StateSampled(state_for(ref(100), total_assets=1)))


class TestGaps:
    """Missing heights are replayed before anything above them finalizes."""

    def test_gap_is_replayed_and_finalized_in_order(self):
        h = make_harness()
        h.apply(header(100))
        h.apply(header(150))
        assert h.replays == [(101, 149)]

        for n in range(101, 150):
            h.apply(header(n, replayed=True))
        h.apply(ReplayCompleted(101, 149))
        for n in range(151, 155):
            h.apply(header(n))

        numbers = [f.block.number for f in h.finalized]
        assert numbers == list(range(100, 151))

    def test_gap_is_not_requested_twice(self):
        h = make_harness()
        h.apply(header(100), header(150), header(151))
        assert h.replays == [(101, 149)]

    def test_failed_replay_is_requested_again(self):
        h = make_harness()
        h.apply(header(100), header(105))
        h.apply(ReplayFailed(101, 104, "timeout"))
        h.apply(header(106))
        assert h.replays == [(101, 104), (101, 104)]

    def test_resumed_after_gap_replays_every_unfinalized_height(self):
        h = make_harness()
        h.apply(header(100), header(101))
        h.apply(ResumedAfterGap(101, 110))
        assert h.replays == [(100, 110)]

    def test_logs_lost_before_disconnect_are_recovered(self):
        h = make_harness(depth=2)
        h.apply(header(100), header(101))
        h.apply(ResumedAfterGap(101, 103))
        h.apply(header(104), header(105))
        assert h.finalized == []

        for n in range(100, 104):
            h.apply(header(n, replayed=True))
            if n == 101:
                h.apply(ObservedEvent(deposit(101)))
        h.apply(ReplayCompleted(100, 103))

        by_number = {f.block.number: f for f in h.finalized}
        assert sorted(by_number) == [100, 101, 102]
        assert by_number[101].events == (deposit(101),)

    def test_finalization_waits_for_replay_to_complete(self):
        h = make_harness(depth=2)
        h.apply(header(100), header(104))
        for n in range(101, 104):
            h.apply(header(n, replayed=True))
        h.apply(header(105), header(106))
        assert [f.block.number for f in h.finalized] == [100]
        h.apply(ReplayCompleted(101, 103))
        assert [f.block.number for f in h.finalized] == [100, 101, 102, 103]

    def test_failed_resume_replay_keeps_heights_unfinalized(self):
        h = make_harness(depth=2)
        h.apply(header(100), header(101))
        h.apply(ResumedAfterGap(101, 101))
        h.apply(ReplayFailed(100, 101, "timeout"))
        h.apply(header(102), header(103), header(104))
        assert h.finalized == []
        assert h.replays == [(100, 101), (100, 101)]

    def test_resume_from_checkpoint_replays_from_next_block(self):
        h = make_harness(last_finalized=BlockRef(99, bhash(99)))
        h.apply(header(105))
        assert h.replays == [(100, 104)]
        for n in range(100, 105):
            h.apply(header(n, replayed=True))
        h.apply(ReplayCompleted(100, 104))
        assert [f.block.number for f in h.finalized] == [100, 101]

    def test_resume_with_mismatching_parent_is_fatal(self):
        h = make_harness(last_finalized=BlockRef(99, bhash(99)))
        h.apply(header(105))
        with pytest.raises(ConsistencyError):
            h.apply(header(100, parent_fork=1, replayed=True))


class TestStalledSamples:
    """A block whose state cannot be read stalls without blocking other samples."""

    def test_failed_sample_stalls_block(self):
        h = make_harness(fail_always={101})
        for n in range(100, 108):
            h.apply(header(n))
        assert [f.block.number for f in h.finalized] == [100]
        assert h.engine.stalled_blocks == [ref(101)]
        assert h.engine.status_of(ref(102)) == BlockStatus.PROVISIONAL

    def test_stalled_block_is_resampled_and_finalizes(self):
        h = make_harness(fail_once={101}, stall_retry_blocks=3)
        for n in range(100, 108):
            h.apply(header(n))
        assert h.samples.count(ref(101)) == 2
        assert [f.block.number for f in h.finalized] == [100, 101, 102, 103]
        assert h.engine.stalled_blocks == []
