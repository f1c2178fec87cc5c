"""
Error taxonomy for the vault indexer.

Transient errors (`TransportError`, `SampleError`) are absorbed and retried at
the component that raised them. `DecodeMismatch` is data-level and only ever
logged. `ConsistencyError` and `FatalConfigError` are the two errors allowed
to reach the top level.
"""

from typing import Optional


class VaultIndexerError(Exception):
    """Base class for all indexer errors."""


class TransportError(VaultIndexerError):
    """Connection to the node was lost or a node request failed transiently."""


class FatalConfigError(VaultIndexerError):
    """Startup configuration is unusable, or the endpoint stayed unreachable."""


class SampleError(VaultIndexerError):
    """The node could not serve vault state at the requested block."""

    def __init__(self, message: str, block_number: Optional[int] = None, attempts: int = 0):
        super().__init__(message)
        self.block_number = block_number
        self.attempts = attempts


class DecodeMismatch(VaultIndexerError):
    """A log entry did not match the Deposit/Withdraw shapes."""


class ConsistencyError(VaultIndexerError):
    """An ordering or identity invariant was violated; ingestion must stop."""

    def __init__(self, message: str, block_number: Optional[int] = None):
        super().__init__(message)
        self.block_number = block_number
