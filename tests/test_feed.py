"""
Tests for the chain feed (reconnect policy, gap signalling, replay) and the
web3 transport underneath it.
"""

import pytest
from web3.exceptions import Web3Exception

from chain_fixtures import VAULT, FakeTransport, bhash, deposit_log, header, header_dict, no_sleep
from vault_indexer.core.abi import DEPOSIT_TOPIC0, WITHDRAW_TOPIC0
from vault_indexer.core.errors import FatalConfigError, TransportError
from vault_indexer.core.harvesters import transport as transport_module
from vault_indexer.core.harvesters.feed import ChainFeed
from vault_indexer.core.harvesters.transport import Web3Transport
from vault_indexer.core.types import Header, LogEntry, ResumedAfterGap


async def take(agen, count):
    items = []
    try:
        for _ in range(count):
            items.append(await agen.__anext__())
    finally:
        await agen.aclose()
    return items


class TestSubscribe:

    @pytest.mark.asyncio
    async def test_passes_items_through(self):
        log = deposit_log(100, 0, 1, 1)
        transport = FakeTransport(sessions=[[header(100), LogEntry(log), header(101)]], hang=True)
        feed = ChainFeed(transport, sleep=no_sleep)
        items = await take(feed.subscribe(), 3)
        assert items[0] == header(100)
        assert items[1].raw is log
        assert feed.last_seen_block == 101

    @pytest.mark.asyncio
    async def test_reconnect_emits_resumed_after_gap(self):
        transport = FakeTransport(
            sessions=[
                [header(100), header(101), TransportError("socket closed")],
                [header(105), header(106)],
            ],
            headers={n: header(n) for n in range(100, 107)},
            hang=True,
        )
        feed = ChainFeed(transport, sleep=no_sleep)
        items = await take(feed.subscribe(), 5)
        assert items[:2] == [header(100), header(101)]
        assert items[2] == ResumedAfterGap(101, 106)
        assert items[3:] == [header(105), header(106)]
        assert feed.reconnects == 1

    @pytest.mark.asyncio
    async def test_backoff_grows_then_gives_up(self):
        delays = []

        async def record_sleep(delay):
            delays.append(delay)

        transport = FakeTransport(sessions=[])
        feed = ChainFeed(transport, backoff_initial=1.0, backoff_max=30.0, max_attempts=4, sleep=record_sleep)
        with pytest.raises(FatalConfigError):
            await take(feed.subscribe(), 1)
        assert transport.connects == 4
        assert len(delays) == 3
        assert delays[0] < delays[1] < delays[2] <= 30.0

    @pytest.mark.asyncio
    async def test_successful_item_resets_failure_count(self):
        transport = FakeTransport(
            sessions=[
                [TransportError("drop")],
                [header(100), TransportError("drop")],
                [TransportError("drop")],
                [header(101)],
            ],
            headers={100: header(100), 101: header(101)},
            hang=True,
        )
        feed = ChainFeed(transport, max_attempts=3, sleep=no_sleep)
        items = await take(feed.subscribe(), 3)
        assert items[0] == header(100)
        assert isinstance(items[1], ResumedAfterGap)
        assert items[2] == header(101)

    @pytest.mark.asyncio
    async def test_resumed_without_head_when_node_unreadable(self):
        transport = FakeTransport(
            sessions=[[header(100), TransportError("drop")], [header(103)]],
            hang=True,
        )
        feed = ChainFeed(transport, sleep=no_sleep)
        items = await take(feed.subscribe(), 3)
        assert items[1] == ResumedAfterGap(100, None)


class TestReplay:

    @pytest.mark.asyncio
    async def test_replay_yields_blocks_oldest_first_with_sorted_logs(self):
        logs = [
            deposit_log(13, 0, 1, 1),
            deposit_log(11, 3, 1, 1),
            deposit_log(11, 1, 1, 1),
            deposit_log(11, 2, 1, 1, fork=1),
        ]
        transport = FakeTransport(headers={n: header(n) for n in range(10, 15)}, logs=logs)
        feed = ChainFeed(transport, replay_chunk_blocks=2)

        items = [item async for item in feed.replay(10, 14)]

        shape = [
            ("H", i.block.number) if isinstance(i, Header) else ("L", int(i.raw["logIndex"]))
            for i in items
        ]
        assert shape == [("H", 10), ("H", 11), ("L", 1), ("L", 3), ("H", 12), ("H", 13), ("L", 0), ("H", 14)]
        assert all(i.replayed for i in items)

    @pytest.mark.asyncio
    async def test_replay_drops_logs_of_other_forks(self):
        logs = [deposit_log(11, 0, 1, 1, fork=1)]
        transport = FakeTransport(headers={11: header(11)}, logs=logs)
        feed = ChainFeed(transport)
        items = [item async for item in feed.replay(11, 11)]
        assert [type(i) for i in items] == [Header]
        assert items[0].block.hash == bhash(11)

    @pytest.mark.asyncio
    async def test_replay_of_unknown_block_raises_transport_error(self):
        feed = ChainFeed(FakeTransport(headers={}))
        with pytest.raises(TransportError):
            async for _ in feed.replay(5, 6):
                pass


class TestHeaderParsing:

    def test_header_from_web3_block(self):
        assert Header.from_web3(header_dict(7)) == header(7)
        assert Header.from_web3(header_dict(7), replayed=True).replayed

    def test_hashes_are_lowercase_hex(self):
        raw = dict(header_dict(8, fork=0xAB), hash=bhash(8, 0xAB).upper().replace("0X", "0x"))
        parsed = Header.from_web3(raw)
        assert parsed.block.hash == bhash(8, 0xAB)


class StubEth:
    """Blocking `w3.eth` double; `fail(a, b)` returns an error message or None."""

    def __init__(self, logs=(), fail=None, blocks=None):
        self.logs = list(logs)
        self.fail = fail or (lambda a, b: None)
        self.blocks = dict(blocks or {})
        self.calls = []

    def get_logs(self, filt):
        a, b = filt["fromBlock"], filt["toBlock"]
        self.calls.append((a, b))
        message = self.fail(a, b)
        if message:
            raise ValueError(message)
        return [log for log in self.logs if a <= log["blockNumber"] <= b]

    def get_block(self, number):
        return self.blocks.get(number)


class StubWeb3:
    def __init__(self, eth):
        self.eth = eth


def make_transport(eth, chunk_size_blocks=100):
    return Web3Transport("ws://node", StubWeb3(eth), VAULT, [DEPOSIT_TOPIC0, WITHDRAW_TOPIC0], chunk_size_blocks)


def one_log_per_block(first, last):
    return [deposit_log(n, 0, 1, 1) for n in range(first, last + 1)]


class TestChunkedLogs:

    def test_walks_range_in_fixed_chunks(self):
        eth = StubEth(one_log_per_block(0, 12))
        logs = list(make_transport(eth, chunk_size_blocks=5)._get_logs_chunked(0, 12))
        assert eth.calls == [(0, 4), (5, 9), (10, 12)]
        assert [log["blockNumber"] for log in logs] == list(range(13))

    def test_follows_suggested_range_on_max_results(self):
        def fail(a, b):
            if b - a >= 5:
                return f"query exceeds max results 10000, retry with the range {a}-{a + 4}"
            return None

        eth = StubEth(one_log_per_block(10, 29), fail)
        logs = list(make_transport(eth)._get_logs_chunked(10, 29))
        assert eth.calls == [(10, 29), (10, 14), (15, 29), (15, 19), (20, 29), (20, 24), (25, 29)]
        assert [log["blockNumber"] for log in logs] == list(range(10, 30))

    def test_retryable_error_splits_range(self):
        def fail(a, b):
            return "429 Too Many Requests" if b - a >= 4 else None

        eth = StubEth(one_log_per_block(0, 15), fail)
        logs = list(make_transport(eth)._get_logs_chunked(0, 15))
        assert [log["blockNumber"] for log in logs] == list(range(16))
        assert eth.calls[:3] == [(0, 15), (0, 7), (0, 3)]

    def test_large_result_is_bisected(self, monkeypatch):
        monkeypatch.setattr(transport_module, "SOFT_LOG_LIMIT", 3)
        eth = StubEth(one_log_per_block(0, 7))
        logs = list(make_transport(eth)._get_logs_chunked(0, 7))
        assert [log["blockNumber"] for log in logs] == list(range(8))
        assert eth.calls == [(0, 7), (0, 3), (0, 1), (2, 3), (4, 7), (4, 5), (6, 7)]

    @pytest.mark.asyncio
    async def test_other_errors_become_transport_errors(self):
        eth = StubEth(fail=lambda a, b: "execution reverted")
        with pytest.raises(TransportError):
            await make_transport(eth).get_logs(0, 5)
        assert eth.calls == [(0, 5)]

    @pytest.mark.asyncio
    async def test_missing_block_is_a_transport_error(self):
        transport = make_transport(StubEth(blocks={7: header_dict(7)}))
        assert await transport.get_header(7) == header(7, replayed=True)
        with pytest.raises(TransportError):
            await transport.get_header(8)


class FakeSocket:
    def __init__(self, messages, error):
        self.messages = messages
        self.error = error

    async def process_subscriptions(self):
        for message in self.messages:
            yield message
        if self.error is not None:
            raise self.error


class FakeAsyncWeb3:
    """Websocket web3 double: hands out fixed subscription ids, then replays messages."""

    def __init__(self, messages=(), error=None, subscribe_error=None):
        self.eth = self
        self.socket = FakeSocket(list(messages), error)
        self.subscribe_error = subscribe_error
        self.subscriptions = []

    async def subscribe(self, kind, params=None):
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.subscriptions.append((kind, params))
        return "0xheads" if kind == "newHeads" else "0xlogs"

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


@pytest.fixture
def fake_socket(monkeypatch):
    def install(**kwargs):
        fake = FakeAsyncWeb3(**kwargs)
        monkeypatch.setattr(transport_module, "WebSocketProvider", lambda url: url)
        monkeypatch.setattr(transport_module, "AsyncWeb3", lambda provider: fake)
        return fake

    return install


async def drain(transport):
    items = []
    with pytest.raises(TransportError):
        async for item in transport.stream():
            items.append(item)
    return items


class TestStream:

    @pytest.mark.asyncio
    async def test_messages_mapped_by_subscription_id(self, fake_socket):
        log = deposit_log(5, 0, 1, 1)
        fake = fake_socket(
            messages=[
                {"subscription": "0xheads", "result": header_dict(5)},
                {"subscription": "0xlogs", "result": log},
                {"subscription": "0xsomeone-else", "result": {"number": 1}},
                {"subscription": "0xheads", "result": None},
            ],
            error=OSError("connection reset by peer"),
        )
        items = await drain(make_transport(StubEth()))

        assert items[0] == header(5)
        assert isinstance(items[1], LogEntry) and items[1].raw is log
        assert len(items) == 2
        assert fake.subscriptions == [
            ("newHeads", None),
            ("logs", {"address": VAULT, "topics": [[DEPOSIT_TOPIC0, WITHDRAW_TOPIC0]]}),
        ]

    @pytest.mark.asyncio
    async def test_closed_stream_is_a_transport_error(self, fake_socket):
        fake_socket(messages=[{"subscription": "0xheads", "result": header_dict(6)}])
        assert await drain(make_transport(StubEth())) == [header(6)]

    @pytest.mark.asyncio
    async def test_rejected_subscription_is_a_transport_error(self, fake_socket):
        fake_socket(subscribe_error=Web3Exception("method not found"))
        assert await drain(make_transport(StubEth())) == []
