"""
Node transport: the only module that talks JSON-RPC.

- Live: `eth_subscribe` to `newHeads` and to vault logs over a websocket
  (`AsyncWeb3` + `WebSocketProvider`).
- Replay / point queries: blocking HTTP web3 built by
  `eth_defi.provider.multi_provider.create_multi_provider_web3` (fallover
  across several RPC URLs), run off the event loop with `asyncio.to_thread`.

Connection problems surface as `TransportError`; reconnect policy lives in
`ChainFeed`, not here.
"""

import asyncio
import logging
import re
from typing import Any, AsyncIterator, Dict, Iterator, List, Sequence, Union

from eth_defi.provider.multi_provider import create_multi_provider_web3
from web3 import AsyncWeb3, Web3, WebSocketProvider
from web3.exceptions import ProviderConnectionError, Web3Exception
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from vault_indexer.core.errors import TransportError
from vault_indexer.core.types import Header, LogEntry

logger = logging.getLogger(__name__)

FeedItem = Union[Header, LogEntry]

_CONNECTION_ERRORS = (ConnectionClosed, InvalidHandshake, ProviderConnectionError, OSError, asyncio.TimeoutError)

# Substrings of node errors that mean "ask for less", not "give up".
RETRYABLE = (
    "timeout", "503", "502", "500", "429", "rate limit", "too many",
    "limit exceeded", "gateway", "413", "entity too large",
    "payload too large", "request entity too large", "content too big",
    "range is too large", "max is 1k blocks",
    "query returned more than 10000 results", "exceeds max results",
    "-32005", "-32603", "-32602",
)
SOFT_LOG_LIMIT = 5000


def build_http_web3(json_rpc_urls: Sequence[str], timeout: float = 60.0) -> Web3:
    return create_multi_provider_web3(" ".join(json_rpc_urls), request_kwargs={"timeout": timeout})


class Web3Transport:
    def __init__(
        self,
        ws_url: str,
        http_w3: Web3,
        vault_address: str,
        topics: List[str],
        chunk_size_blocks: int = 200,
    ):
        self.ws_url = ws_url
        self.http_w3 = http_w3
        self.vault_address = Web3.to_checksum_address(vault_address)
        self.topics = list(topics)
        self.chunk_size_blocks = chunk_size_blocks

    async def stream(self) -> AsyncIterator[FeedItem]:
        """Subscribe and yield headers and raw logs until the connection drops."""
        try:
            async with AsyncWeb3(WebSocketProvider(self.ws_url)) as w3:
                heads_id = await w3.eth.subscribe("newHeads")
                logs_id = await w3.eth.subscribe(
                    "logs", {"address": self.vault_address, "topics": [self.topics]}
                )
                logger.info("Subscribed to heads (%s) and vault logs (%s)", heads_id, logs_id)
                async for message in w3.socket.process_subscriptions():
                    sub_id = message.get("subscription")
                    result = message.get("result")
                    if result is None:
                        continue
                    if sub_id == heads_id:
                        yield Header.from_web3(result)
                    elif sub_id == logs_id:
                        yield LogEntry(result)
        except _CONNECTION_ERRORS as exc:
            raise TransportError(f"websocket connection lost: {exc}") from exc
        except Web3Exception as exc:
            raise TransportError(f"subscription failed: {exc}") from exc
        raise TransportError("subscription stream ended")

    async def head_number(self) -> int:
        return await self._call(lambda: int(self.http_w3.eth.block_number))

    async def get_header(self, number: int) -> Header:
        raw = await self._call(lambda: self.http_w3.eth.get_block(number))
        if raw is None:
            raise TransportError(f"node has no block {number}")
        return Header.from_web3(raw, replayed=True)

    async def get_logs(self, start: int, end: int) -> List[Dict[str, Any]]:
        return await self._call(lambda: list(self._get_logs_chunked(start, end)))

    async def _call(self, fn):
        try:
            return await asyncio.to_thread(fn)
        except TransportError:
            raise
        except Exception as exc:
            raise TransportError(f"RPC request failed: {str(exc)[:200]}") from exc

    def _get_logs_chunked(self, start_block: int, end_block: int) -> Iterator[Dict[str, Any]]:
        """Fetch vault logs over a block range, splitting on node range / size limits."""

        def extract_suggested_range(error_msg: str):
            m = re.search(r"range (\d+)-(\d+)", error_msg)
            if m:
                return int(m.group(1)), int(m.group(2))
            return None

        def yield_range(a: int, b: int, retry_count: int = 0):
            if retry_count > 2:
                chunk_size = max((b - a) // 10, 50)
                for chunk_start in range(a, b + 1, chunk_size):
                    yield from yield_range(chunk_start, min(chunk_start + chunk_size - 1, b), 0)
                return

            filt = {"fromBlock": a, "toBlock": b, "address": self.vault_address, "topics": [self.topics]}
            try:
                logs = self.http_w3.eth.get_logs(filt)
            except Exception as e:
                msg = str(e).lower()
                if b > a:
                    if "exceeds max results" in msg:
                        suggested = extract_suggested_range(str(e))
                        if suggested and suggested[0] == a:
                            s, e2 = suggested
                            yield from yield_range(a, e2, 0)
                            if e2 < b:
                                yield from yield_range(e2 + 1, b, 0)
                            return
                    if "exceeds max results" in msg or any(s in msg for s in RETRYABLE):
                        parts = 8 if ("10000" in msg or "exceeds max results" in msg) else 2
                        part_size = max((b - a + 1) // parts, 1)
                        s = a
                        while s <= b:
                            e2 = min(s + part_size - 1, b)
                            yield from yield_range(s, e2, retry_count + 1)
                            s = e2 + 1
                        return
                raise

            if len(logs) > SOFT_LOG_LIMIT and b > a:
                mid = (a + b) // 2
                yield from yield_range(a, mid, retry_count)
                yield from yield_range(mid + 1, b, retry_count)
                return
            yield from logs

        cur = start_block
        while cur <= end_block:
            to_blk = min(cur + self.chunk_size_blocks - 1, end_block)
            yield from yield_range(cur, to_blk)
            cur = to_blk + 1
