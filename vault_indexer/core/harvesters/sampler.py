"""
State sampler: totalAssets / totalSupply at one exact block.

Reads are pinned with `block_identifier=<block hash>` (EIP-1898) so the node
cannot answer with "latest" or with the same height on another fork. Calls go
through a blocking web3 contract on a bounded thread pool; the coroutine side
adds per-attempt timeouts and bounded retries with backoff.

The sampler gets its own HTTP web3 whose request timeout equals the
per-attempt timeout, so a read that times out also frees its worker thread.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional, Tuple

from hexbytes import HexBytes
from web3 import Web3

from vault_indexer.core.abi import VAULT_STATE_ABI
from vault_indexer.core.errors import SampleError
from vault_indexer.core.harvesters.transport import build_http_web3
from vault_indexer.core.retry import backoff_delay
from vault_indexer.core.types import BlockRef, VaultState

logger = logging.getLogger(__name__)


class StateSampler:
    def __init__(
        self,
        contract: Any,
        max_workers: int = 4,
        max_attempts: int = 5,
        timeout: float = 10.0,
        backoff_initial: float = 0.5,
        backoff_max: float = 8.0,
    ):
        self.contract = contract
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sampler")

    @classmethod
    def from_web3(cls, w3: Web3, vault_address: str, state_abi=None, **kwargs) -> "StateSampler":
        contract = w3.eth.contract(address=Web3.to_checksum_address(vault_address), abi=state_abi or VAULT_STATE_ABI)
        return cls(contract, **kwargs)

    @classmethod
    def from_rpc_urls(cls, json_rpc_urls, vault_address: str, state_abi=None, timeout: float = 10.0, **kwargs):
        w3 = build_http_web3(json_rpc_urls, timeout=timeout)
        return cls.from_web3(w3, vault_address, state_abi, timeout=timeout, **kwargs)

    def read(self, block_identifier: Any) -> Tuple[int, int]:
        """One blocking read of (totalAssets, totalSupply)."""
        total_assets = int(self.contract.functions.totalAssets().call(block_identifier=block_identifier))
        total_supply = int(self.contract.functions.totalSupply().call(block_identifier=block_identifier))
        return total_assets, total_supply

    async def sample_at(self, block: BlockRef) -> VaultState:
        loop = asyncio.get_running_loop()
        pinned = HexBytes(block.hash)
        last_exc: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                total_assets, total_supply = await asyncio.wait_for(
                    loop.run_in_executor(self._executor, self.read, pinned), timeout=self.timeout
                )
                if attempt > 1:
                    logger.info("State for block %s sampled after %d attempts", block, attempt)
                return VaultState(block=block, total_assets=total_assets, total_supply=total_supply)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError as exc:
                last_exc = exc
                logger.warning("State read for block %s timed out after %.1fs (attempt %d/%d)",
                               block, self.timeout, attempt, self.max_attempts)
            except Exception as exc:
                # pruned state, unknown block hash, rate limits: all retryable here
                last_exc = exc
                logger.warning("State read for block %s failed (attempt %d/%d): %s",
                               block, attempt, self.max_attempts, str(exc)[:200])
            if attempt < self.max_attempts:
                await asyncio.sleep(backoff_delay(attempt, self.backoff_initial, self.backoff_max))
        raise SampleError(
            f"cannot read vault state at block {block} after {self.max_attempts} attempts: {last_exc}",
            block_number=block.number,
            attempts=self.max_attempts,
        )

    async def sample_latest(self) -> Tuple[int, int]:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(loop.run_in_executor(self._executor, self.read, "latest"), timeout=self.timeout)

    def close(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)
