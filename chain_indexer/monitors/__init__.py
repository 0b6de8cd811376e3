"""Block ingestion orchestration"""

from chain_indexer.monitors.block_processor import BlockProcessingResult, BlockProcessor
from chain_indexer.monitors.sync_loop import SyncLoop, SyncState

__all__ = [
    "BlockProcessingResult",
    "BlockProcessor",
    "SyncLoop",
    "SyncState",
]
