"""
Chain-facing modules: feed, log decoding and vault state sampling.
"""

from vault_indexer.core.harvesters.decoder import EventDecoder
from vault_indexer.core.harvesters.feed import ChainFeed
from vault_indexer.core.harvesters.sampler import StateSampler

__all__ = [
    "ChainFeed",
    "EventDecoder",
    "StateSampler",
]
