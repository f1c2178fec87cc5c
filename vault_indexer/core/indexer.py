"""
vault-indexer: real-time ERC-4626 vault indexer.

Overview
--------
Follows one vault over a websocket subscription and keeps a durable, ordered
record of Deposit events, Withdraw events and per-block vault state
(totalAssets / totalSupply). A block is persisted only once it is buried
`confirmation_depth` blocks below the head. Anything shallower may still be
retracted by a reorg.

Workflow
--------
1) Load config (YAML + `.env`), open the store, seed the engine from the last
   finalized block of a previous run.
2) Log the vault's latest state once.
3) Pump feed items (headers, raw logs, gap signals) into one inbox.
4) A single consumer decodes logs, applies every message to the engine and
   carries out the resulting actions: spawn a state sample, spawn a replay,
   persist a finalized block.
5) On SIGINT / SIGTERM: cancel the feed, drain in-flight samples for
   `shutdown_timeout_seconds`, then cancel whatever is left.

Exit status: 0 on a clean stop, 2 on `FatalConfigError`, 3 on
`ConsistencyError`.
"""

import argparse
import asyncio
import logging
import signal
import time
from typing import Any, Awaitable, Dict, List, Optional, Set

from vault_indexer.core.abi import VaultInterface
from vault_indexer.core.config import load_config
from vault_indexer.core.engine import (
    Finalize,
    ObservedEvent,
    ReconciliationEngine,
    ReplayCompleted,
    ReplayFailed,
    RequestReplay,
    RequestSample,
    Retract,
    SampleFailed,
    StateSampled,
)
from vault_indexer.core.errors import ConsistencyError, FatalConfigError, SampleError, TransportError
from vault_indexer.core.harvesters.decoder import EventDecoder
from vault_indexer.core.harvesters.feed import ChainFeed
from vault_indexer.core.harvesters.sampler import StateSampler
from vault_indexer.core.harvesters.transport import Web3Transport, build_http_web3
from vault_indexer.core.store import DurableStore
from vault_indexer.core.types import BlockRef, LogEntry, Unrecognized

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_STOP = object()


class _TaskFailed:
    """Carries an unexpected exception from a worker task to the consumer."""

    def __init__(self, error: BaseException):
        self.error = error


class VaultIndexer:
    def __init__(
        self,
        feed: ChainFeed,
        decoder: EventDecoder,
        sampler: StateSampler,
        engine: ReconciliationEngine,
        store: DurableStore,
        max_inflight_samples: int = 4,
        shutdown_timeout: float = 10.0,
    ):
        self.feed = feed
        self.decoder = decoder
        self.sampler = sampler
        self.engine = engine
        self.store = store
        self.shutdown_timeout = shutdown_timeout
        self.inbox: asyncio.Queue = asyncio.Queue()
        self._sample_slots = asyncio.Semaphore(max_inflight_samples)
        self._tasks: Set[asyncio.Task] = set()
        self._feed_task: Optional[asyncio.Task] = None
        self.blocks_finalized = 0
        self.events_written = 0
        self.logs_dropped = 0

    async def run(self) -> None:
        """Consume the inbox until `stop()` or a fatal error."""
        self._feed_task = asyncio.create_task(self._pump_feed(), name="feed")
        try:
            while True:
                message = await self.inbox.get()
                if message is _STOP:
                    logger.info("Stop requested")
                    break
                if isinstance(message, _TaskFailed):
                    raise message.error
                self.handle(message)
        finally:
            await self._shutdown()

    def stop(self) -> None:
        self.inbox.put_nowait(_STOP)

    def handle(self, message: Any) -> None:
        if isinstance(message, LogEntry):
            verdict = self.decoder.decode(message.raw)
            if isinstance(verdict, Unrecognized):
                self.logs_dropped += 1
                return
            message = ObservedEvent(verdict, removed=message.removed)
        for action in self.engine.apply(message):
            self._dispatch(action)

    def _dispatch(self, action) -> None:
        if isinstance(action, RequestSample):
            self._spawn(self._sample(action.block), f"sample-{action.block.number}")
        elif isinstance(action, RequestReplay):
            self._spawn(self._replay(action.start, action.end), f"replay-{action.start}-{action.end}")
        elif isinstance(action, Finalize):
            record = action.record
            if self.store.append(record):
                self.events_written += len(record.events)
            self.blocks_finalized += 1
            state = record.state
            logger.info(
                "Persisted block %s: %d event(s), totalAssets=%d totalSupply=%d",
                record.block, len(record.events), state.total_assets, state.total_supply,
            )
        elif isinstance(action, Retract):
            self.store.retract(action.block.number)
        else:
            raise TypeError(f"unknown action {action!r}")

    # ---------------- Producers ----------------

    async def _pump_feed(self) -> None:
        try:
            async for item in self.feed.subscribe():
                await self.inbox.put(item)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self.inbox.put(_TaskFailed(exc))

    async def _sample(self, block: BlockRef) -> None:
        async with self._sample_slots:
            try:
                state = await self.sampler.sample_at(block)
            except SampleError as exc:
                await self.inbox.put(SampleFailed(block, str(exc)))
                return
        await self.inbox.put(StateSampled(state))

    async def _replay(self, start: int, end: int) -> None:
        try:
            async for item in self.feed.replay(start, end):
                await self.inbox.put(item)
        except TransportError as exc:
            await self.inbox.put(ReplayFailed(start, end, str(exc)))
            return
        await self.inbox.put(ReplayCompleted(start, end))

    def _spawn(self, coro: Awaitable[None], name: str) -> None:
        task = asyncio.create_task(self._guard(coro), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, coro: Awaitable[None]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self.inbox.put(_TaskFailed(exc))

    # ---------------- Startup / shutdown ----------------

    async def log_initial_state(self) -> Optional[Dict[str, int]]:
        try:
            total_assets, total_supply = await self.sampler.sample_latest()
        except Exception as exc:
            logger.warning("Could not read initial vault state: %s", str(exc)[:200])
            return None
        logger.info("Initial state: totalAssets=%d totalSupply=%d", total_assets, total_supply)
        return {"totalAssets": total_assets, "totalSupply": total_supply}

    async def _shutdown(self) -> None:
        if self._feed_task is not None and not self._feed_task.done():
            self._feed_task.cancel()
            await asyncio.gather(self._feed_task, return_exceptions=True)
        pending: List[asyncio.Task] = [t for t in self._tasks if not t.done()]
        if pending:
            logger.info("Draining %d in-flight task(s) for up to %.1fs", len(pending), self.shutdown_timeout)
            _, still_running = await asyncio.wait(pending, timeout=self.shutdown_timeout)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)
        self.sampler.close()
        logger.info(
            "Shutdown complete: %d block(s) finalized, %d event(s) written, %d log(s) dropped",
            self.blocks_finalized, self.events_written, self.logs_dropped,
        )


def build_indexer(cfg: Dict[str, Any]) -> VaultIndexer:
    interface = VaultInterface.from_file(cfg["abi_path"]) if cfg.get("abi_path") else VaultInterface()
    http_w3 = build_http_web3(cfg["json_rpc_urls"])
    transport = Web3Transport(
        cfg["ws_url"],
        http_w3,
        cfg["vault_address"],
        interface.topic_list,
        chunk_size_blocks=cfg["replay_chunk_blocks"],
    )
    feed = ChainFeed(
        transport,
        backoff_initial=cfg["reconnect_backoff_initial"],
        backoff_max=cfg["reconnect_backoff_max"],
        max_attempts=cfg["reconnect_max_attempts"],
        replay_chunk_blocks=cfg["replay_chunk_blocks"],
    )
    sampler = StateSampler.from_rpc_urls(
        cfg["json_rpc_urls"],
        cfg["vault_address"],
        interface.state_abi,
        timeout=cfg["sample_timeout_seconds"],
        max_workers=cfg["sample_workers"],
        max_attempts=cfg["sample_max_attempts"],
        backoff_initial=cfg["sample_backoff_initial"],
        backoff_max=cfg["sample_backoff_max"],
    )
    store = DurableStore(cfg["out_dir"], cfg["vault_address"], chunk_blocks=cfg["store_chunk_blocks"]).open()
    last = store.last_finalized() if cfg["resume_from_checkpoint"] else None
    if last is not None:
        logger.info("Resuming after finalized block %s", last)
    engine = ReconciliationEngine(
        confirmation_depth=cfg["confirmation_depth"],
        stall_retry_blocks=cfg["stall_retry_blocks"],
        last_finalized=last,
    )
    return VaultIndexer(
        feed,
        EventDecoder(cfg["vault_address"], interface),
        sampler,
        engine,
        store,
        max_inflight_samples=cfg["sample_workers"],
        shutdown_timeout=cfg["shutdown_timeout_seconds"],
    )


async def run_indexer(cfg: Dict[str, Any]) -> VaultIndexer:
    indexer = build_indexer(cfg)
    await indexer.log_initial_state()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, indexer.stop)
        except NotImplementedError:
            pass
    await indexer.run()
    return indexer


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Real-time ERC-4626 vault indexer")
    parser.add_argument("--config", default=None, help="Path to vault_indexer_config.yml")
    parser.add_argument("--log-level", default=None, help="Override log_level from the config")
    args = parser.parse_args(argv)

    configure_logging(args.log_level or "INFO")
    start_time = time.time()
    try:
        cfg = load_config(args.config)
        logging.getLogger().setLevel(args.log_level.upper() if args.log_level else cfg["log_level"])
        logger.info("=" * 60)
        logger.info("Starting vault indexer")
        logger.info("Vault: %s", cfg["vault_address"])
        logger.info("Confirmation depth: %d", cfg["confirmation_depth"])
        logger.info("Output directory: %s", cfg["out_dir"])
        logger.info("=" * 60)
        asyncio.run(run_indexer(cfg))
    except FatalConfigError as exc:
        logger.critical("Fatal configuration error: %s", exc)
        return 2
    except ConsistencyError as exc:
        logger.critical("Consistency violation at block %s, ingestion stopped: %s", exc.block_number, exc)
        return 3
    logger.info("Stopped after %.0fs", time.time() - start_time)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
