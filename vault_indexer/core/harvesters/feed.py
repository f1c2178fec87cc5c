"""
Chain feed adapter.

Wraps a node transport into an infinite, restartable stream of headers and
raw vault logs. On connection loss it reconnects with capped exponential
backoff and, once the new subscription delivers, emits
`ResumedAfterGap(last_seen_block, current_head)` so the engine can ask for a
replay of whatever was missed. It does not persist anything and does not
promise gap-free delivery itself.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Union

from vault_indexer.core.errors import FatalConfigError, TransportError
from vault_indexer.core.retry import backoff_delay
from vault_indexer.core.types import Header, LogEntry, ResumedAfterGap, to_hex

logger = logging.getLogger(__name__)

FeedItem = Union[Header, LogEntry, ResumedAfterGap]


class NodeTransport(Protocol):
    def stream(self) -> AsyncIterator[Union[Header, LogEntry]]: ...

    async def head_number(self) -> int: ...

    async def get_header(self, number: int) -> Header: ...

    async def get_logs(self, start: int, end: int) -> List[Mapping[str, Any]]: ...


class ChainFeed:
    def __init__(
        self,
        transport: NodeTransport,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
        max_attempts: int = 10,
        replay_chunk_blocks: int = 200,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.transport = transport
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.max_attempts = max_attempts
        self.replay_chunk_blocks = replay_chunk_blocks
        self.last_seen_block: Optional[int] = None
        self.reconnects = 0
        self._sleep = sleep

    async def subscribe(self) -> AsyncIterator[FeedItem]:
        failures = 0
        resumed = False
        while True:
            try:
                async for item in self.transport.stream():
                    if failures:
                        logger.info("Feed reconnected after %d failed attempt(s)", failures)
                        failures = 0
                    if resumed:
                        resumed = False
                        if self.last_seen_block is not None:
                            head = await self._current_head()
                            logger.warning(
                                "Resumed after disconnect; last seen block %d, node head %s",
                                self.last_seen_block, head,
                            )
                            yield ResumedAfterGap(self.last_seen_block, head)
                    if isinstance(item, Header) and (
                        self.last_seen_block is None or item.block.number > self.last_seen_block
                    ):
                        self.last_seen_block = item.block.number
                    yield item
                raise TransportError("subscription stream ended")
            except TransportError as exc:
                failures += 1
                resumed = True
                if failures >= self.max_attempts:
                    raise FatalConfigError(
                        f"node unreachable after {failures} consecutive attempts: {exc}"
                    ) from exc
                self.reconnects += 1
                delay = backoff_delay(failures, self.backoff_initial, self.backoff_max)
                logger.warning("Feed dropped (%s); reconnecting in %.1fs (%d/%d)",
                               exc, delay, failures, self.max_attempts)
                await self._sleep(delay)

    async def replay(self, start: int, end: int) -> AsyncIterator[Union[Header, LogEntry]]:
        """Headers and logs of blocks `start..end`, oldest first, all hash-consistent.

        Headers are fetched before the logs; if the top header of a chunk
        changed meanwhile the chunk is fetched again.
        """
        logger.info("Replaying blocks %d-%d", start, end)
        lo = start
        while lo <= end:
            hi = min(lo + self.replay_chunk_blocks - 1, end)
            headers, logs_by_block = await self._fetch_consistent_chunk(lo, hi)
            for header in headers:
                yield header
                for raw in logs_by_block.get(header.block.hash, []):
                    yield LogEntry(raw, replayed=True)
            lo = hi + 1

    async def _fetch_consistent_chunk(self, lo: int, hi: int, attempts: int = 3):
        for _ in range(attempts):
            headers = [await self.transport.get_header(n) for n in range(lo, hi + 1)]
            raw_logs = await self.transport.get_logs(lo, hi)
            top = await self.transport.get_header(hi)
            if top.block.hash != headers[-1].block.hash:
                logger.info("Chain moved while replaying %d-%d; refetching", lo, hi)
                continue
            wanted = {h.block.hash for h in headers}
            logs_by_block: Dict[str, List[Mapping[str, Any]]] = defaultdict(list)
            for raw in raw_logs:
                block_hash = to_hex(raw["blockHash"])
                if block_hash in wanted:
                    logs_by_block[block_hash].append(raw)
            for bucket in logs_by_block.values():
                bucket.sort(key=lambda r: int(r["logIndex"]))
            return headers, logs_by_block
        raise TransportError(f"chain kept reorganising while replaying {lo}-{hi}")

    async def _current_head(self) -> Optional[int]:
        try:
            return await self.transport.head_number()
        except TransportError as exc:
            logger.warning("Cannot read node head after reconnect: %s", exc)
            return None
