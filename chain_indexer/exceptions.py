"""Exception types raised by the indexing pipeline"""


class IndexerError(Exception):
    """Base class for indexer errors"""


class CheckpointRegressionError(IndexerError):
    """Raised when a checkpoint would move backward or stay in place.

    This is an invariant violation: the sync loop stops instead of risking
    silent reordering of processed blocks.
    """

    def __init__(self, chain_id: int, current: int, requested: int):
        self.chain_id = chain_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Checkpoint for chain {chain_id} cannot move from {current} to {requested}"
        )


class BlockUnavailableError(IndexerError):
    """Raised when a block (or its body) is not yet available from the node"""

    def __init__(self, block_number: int, reason: str = "not available"):
        self.block_number = block_number
        self.reason = reason
        super().__init__(f"Block {block_number} unavailable: {reason}")


class LogDecodeError(IndexerError):
    """Raised internally when a log cannot be decoded against an interface"""
