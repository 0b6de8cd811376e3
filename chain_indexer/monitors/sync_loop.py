"""Sync loop: walks the chain in order and advances the checkpoint"""

import asyncio
from enum import Enum
from typing import Dict, Optional

import structlog

from chain_indexer.chains.connector import ChainConnector
from chain_indexer.config.models import ChainConfig
from chain_indexer.database.checkpoint import CheckpointStore
from chain_indexer.exceptions import BlockUnavailableError, CheckpointRegressionError
from chain_indexer.monitoring import metrics
from chain_indexer.monitors.block_processor import BlockProcessor

logger = structlog.get_logger()


class SyncState(Enum):
    """Sync loop states"""

    IDLE = "idle"
    PROCESSING = "processing"
    STOPPED = "stopped"


class SyncLoop:
    """
    Orchestrates checkpoint-driven block ingestion for one chain.
    
    Each cycle:
    - Reads chain height and the checkpoint
    - Processes at most batch_size blocks strictly in ascending order
    - Advances the checkpoint after each block's writes have been attempted
    - Stops the batch at the first block that cannot be fetched
    
    The stop signal is only honoured between blocks, so a started block always
    runs to completion.
    """

    def __init__(
        self,
        chain_connector: ChainConnector,
        block_processor: BlockProcessor,
        checkpoint_store: CheckpointStore,
        chain_config: ChainConfig,
    ):
        """
        Initialize sync loop.
        
        Args:
            chain_connector: RPC client used for height and block headers
            block_processor: Persists everything derived from a block
            checkpoint_store: Durable last-processed-block pointer
            chain_config: Chain id, poll interval and batch size
        """
        self.chain_connector = chain_connector
        self.block_processor = block_processor
        self.checkpoint_store = checkpoint_store
        self.config = chain_config

        self.chain_name = chain_config.name
        self.chain_id = chain_config.chain_id

        self.state = SyncState.IDLE
        self.last_processed_block: Optional[int] = None
        self.fatal_error: Optional[BaseException] = None

        # Consecutive failed attempts per block number
        self._attempts: Dict[int, int] = {}

        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None

        self._logger = logger.bind(
            component="sync_loop",
            chain=self.chain_name,
            chain_id=self.chain_id,
        )

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._loop_task

    async def start(self) -> None:
        """Start the sync loop in a background task"""
        if self.is_running:
            self._logger.warning("sync_loop_already_running")
            return

        self._stop_event.clear()
        self.fatal_error = None
        self.state = SyncState.IDLE
        self._loop_task = asyncio.create_task(self._loop())

        self._logger.info(
            "sync_loop_started",
            batch_size=self.config.batch_size,
            poll_interval_ms=self.config.poll_interval_ms,
        )

    async def stop(self) -> None:
        """
        Request shutdown and wait for the current block to finish.
        
        The task is not cancelled: cancellation could land between the writes
        of one block.
        """
        if self._loop_task is None:
            self._logger.warning("sync_loop_not_running")
            return

        self._stop_event.set()
        try:
            await self._loop_task
        finally:
            self._loop_task = None
            self.state = SyncState.STOPPED

        self._logger.info("sync_loop_stopped", last_processed_block=self.last_processed_block)

    async def run_cycle(self) -> int:
        """
        Run one sync cycle.
        
        Returns:
            Number of blocks processed and checkpointed in this cycle
            
        Raises:
            CheckpointRegressionError: If the checkpoint would not move forward
        """
        latest = await self.chain_connector.get_latest_block()
        checkpoint = await self.checkpoint_store.initialize(self.chain_id)
        self.last_processed_block = checkpoint.last_processed_block

        start = checkpoint.last_processed_block + 1
        metrics.chain_blocks_behind.labels(chain=self.chain_name).set(max(latest - checkpoint.last_processed_block, 0))
        metrics.last_processed_block.labels(chain=self.chain_name).set(checkpoint.last_processed_block)

        if start > latest:
            self.state = SyncState.IDLE
            self._logger.debug("sync_idle", latest_block=latest, last_processed_block=checkpoint.last_processed_block)
            return 0

        end = min(latest, start + self.config.batch_size - 1)
        self.state = SyncState.PROCESSING
        self._logger.debug(
            "sync_batch_started",
            start_block=start,
            end_block=end,
            latest_block=latest,
        )

        processed = 0
        for block_number in range(start, end + 1):
            if self._stop_event.is_set():
                self._logger.info("sync_stop_requested", next_block=block_number)
                break

            if not await self._sync_block(block_number):
                break

            await self.checkpoint_store.advance(self.chain_id, block_number)
            self._attempts.pop(block_number, None)
            self.last_processed_block = block_number
            processed += 1

            metrics.blocks_processed.labels(chain=self.chain_name).inc()
            metrics.last_processed_block.labels(chain=self.chain_name).set(block_number)
            metrics.chain_blocks_behind.labels(chain=self.chain_name).set(max(latest - block_number, 0))

        if processed:
            self._logger.info(
                "sync_batch_completed",
                blocks_processed=processed,
                last_processed_block=self.last_processed_block,
                latest_block=latest,
            )
        self.state = SyncState.IDLE
        return processed

    async def _sync_block(self, block_number: int) -> bool:
        """Fetch and process one block; False means pause at this block"""
        try:
            block = await self.chain_connector.get_block(block_number)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._record_retry(block_number, f"fetch failed: {e}", type(e).__name__)
            return False

        if block is None:
            self._record_retry(block_number, "block not returned", "BlockNotFound")
            return False

        try:
            await self.block_processor.process_block(block)
        except BlockUnavailableError as e:
            self._record_retry(block_number, e.reason, type(e).__name__)
            return False

        return True

    def _record_retry(self, block_number: int, reason: str, error_type: str) -> None:
        attempts = self._attempts.get(block_number, 0) + 1
        self._attempts[block_number] = attempts
        metrics.block_retries.labels(chain=self.chain_name).inc()
        self._logger.error(
            "block_unavailable",
            block_number=block_number,
            attempt=attempts,
            reason=reason,
            error_type=error_type,
        )

    async def _loop(self) -> None:
        """Poll until stopped or a checkpoint invariant is violated"""
        self._logger.info("sync_loop_running")

        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_cycle()
                except CheckpointRegressionError as e:
                    self.fatal_error = e
                    self._logger.critical(
                        "sync_loop_fatal",
                        error=str(e),
                        error_type=type(e).__name__,
                        current=e.current,
                        requested=e.requested,
                    )
                    break
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # Transient RPC/database failure; retried next cycle
                    self._logger.error(
                        "sync_cycle_error",
                        error=str(e),
                        error_type=type(e).__name__,
                    )

                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self.config.poll_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    pass

        except asyncio.CancelledError:
            self._logger.info("sync_loop_cancelled")
            raise
        finally:
            self.state = SyncState.STOPPED
            self._logger.info("sync_loop_exited", last_processed_block=self.last_processed_block)
