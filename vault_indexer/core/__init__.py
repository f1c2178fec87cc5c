"""
Core functionality for ERC-4626 vault ingestion and reconciliation.
"""

from vault_indexer.core.engine import ReconciliationEngine
from vault_indexer.core.errors import (
    ConsistencyError,
    FatalConfigError,
    VaultIndexerError,
)
from vault_indexer.core.store import DurableStore

__all__ = [
    "ReconciliationEngine",
    "DurableStore",
    "VaultIndexerError",
    "ConsistencyError",
    "FatalConfigError",
]
