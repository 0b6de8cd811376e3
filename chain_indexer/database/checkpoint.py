"""Checkpoint store: durable, monotonic pointer to the last processed block"""

from typing import Dict, Optional

import structlog

from chain_indexer.database.manager import DatabaseManager
from chain_indexer.database.models import Checkpoint
from chain_indexer.exceptions import CheckpointRegressionError

logger = structlog.get_logger()

INITIAL_CHECKPOINT = -1


class CheckpointStore:
    """
    Per-chain checkpoint backed by the checkpoints table.

    The checkpoint starts at -1 so the first processed block is 0, and only
    ever moves forward. advance() with a value that is not strictly greater
    than the stored one raises CheckpointRegressionError.
    """

    def __init__(self, database_manager: DatabaseManager):
        self.db = database_manager
        self._known: Dict[int, int] = {}
        self._logger = logger.bind(component="checkpoint_store")

    async def get(self, chain_id: int) -> Optional[int]:
        """Last processed block, or None if the chain has no checkpoint yet"""
        checkpoint = await self.db.get_checkpoint(chain_id)
        if checkpoint is None:
            return None
        self._known[chain_id] = checkpoint.last_processed_block
        return checkpoint.last_processed_block

    async def initialize(self, chain_id: int) -> Checkpoint:
        """Return the chain's checkpoint, creating it at -1 if absent"""
        checkpoint = await self.db.get_checkpoint(chain_id)
        if checkpoint is None:
            self._logger.info(
                "checkpoint_initializing",
                chain_id=chain_id,
                last_processed_block=INITIAL_CHECKPOINT,
            )
            checkpoint = await self.db.create_checkpoint(chain_id, INITIAL_CHECKPOINT)
        self._known[chain_id] = checkpoint.last_processed_block
        return checkpoint

    async def advance(self, chain_id: int, block_number: int) -> None:
        """
        Set the checkpoint to block_number.

        Raises:
            CheckpointRegressionError: If block_number <= the current checkpoint
        """
        current = self._known.get(chain_id)
        if current is None:
            current = await self.get(chain_id)
            if current is None:
                current = (await self.initialize(chain_id)).last_processed_block

        if block_number <= current:
            self._logger.critical(
                "checkpoint_regression_rejected",
                chain_id=chain_id,
                current=current,
                requested=block_number,
            )
            raise CheckpointRegressionError(chain_id, current, block_number)

        if not await self.db.advance_checkpoint(chain_id, block_number):
            # Another writer moved the checkpoint; re-read to report the real value
            stored = await self.get(chain_id)
            self._logger.critical(
                "checkpoint_regression_rejected",
                chain_id=chain_id,
                current=stored,
                requested=block_number,
            )
            raise CheckpointRegressionError(
                chain_id, stored if stored is not None else current, block_number
            )

        self._known[chain_id] = block_number
        self._logger.debug("checkpoint_advanced", chain_id=chain_id, block_number=block_number)
