"""
Vault Indexer

Real-time indexer for the Deposit / Withdraw events and per-block state of an
ERC-4626 vault.
"""

__version__ = "1.0.0"

from vault_indexer.core.types import (
    BlockRef,
    DepositEvent,
    VaultState,
    WithdrawEvent,
)

__all__ = [
    "__version__",
    "BlockRef",
    "DepositEvent",
    "VaultState",
    "WithdrawEvent",
]
