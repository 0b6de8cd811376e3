"""Tests for the sync loop"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from chain_indexer.chains.connector import ChainConnector
from chain_indexer.config.models import ChainConfig
from chain_indexer.database.checkpoint import CheckpointStore
from chain_indexer.database.manager import DatabaseManager
from chain_indexer.database.models import Checkpoint
from chain_indexer.exceptions import BlockUnavailableError, CheckpointRegressionError
from chain_indexer.monitors.block_processor import BlockProcessingResult, BlockProcessor
from chain_indexer.monitors.sync_loop import SyncLoop, SyncState


class FakeChain:
    """Chain of a given height; individual blocks can be made unavailable"""

    def __init__(self, height):
        self.height = height
        self.missing = set()
        self.failing = set()

    async def get_latest_block(self):
        return self.height

    async def get_block(self, number, full_transactions=False):
        if number in self.failing:
            raise ConnectionError(f"timeout fetching {number}")
        if number in self.missing or number > self.height:
            return None
        return {"number": number, "hash": "0x" + f"{number:064x}", "timestamp": 1_700_000_000 + number}


class InMemoryCheckpoints:
    """Checkpoint rows with guarded-update semantics"""

    def __init__(self):
        self.rows = {}

    async def get_checkpoint(self, chain_id):
        if chain_id not in self.rows:
            return None
        return Checkpoint(chain_id=chain_id, last_processed_block=self.rows[chain_id])

    async def create_checkpoint(self, chain_id, last_processed_block=-1):
        self.rows.setdefault(chain_id, last_processed_block)
        return await self.get_checkpoint(chain_id)

    async def advance_checkpoint(self, chain_id, block_number):
        if self.rows.get(chain_id, -1) >= block_number:
            return False
        self.rows[chain_id] = block_number
        return True


@pytest.fixture
def chain():
    return FakeChain(height=10)


@pytest.fixture
def checkpoints():
    return InMemoryCheckpoints()


@pytest.fixture
def chain_config():
    return ChainConfig(
        name="ethereum",
        chain_id=1,
        rpc_urls=["https://eth.example.com"],
        batch_size=3,
        poll_interval_ms=10,
    )


@pytest.fixture
def mock_connector(chain):
    connector = Mock(spec=ChainConnector)
    connector.chain_name = "ethereum"
    connector.chain_id = 1
    connector.get_latest_block = AsyncMock(side_effect=chain.get_latest_block)
    connector.get_block = AsyncMock(side_effect=chain.get_block)
    return connector


@pytest.fixture
def processed():
    """Block numbers in the order they were handed to the processor"""
    return []


@pytest.fixture
def mock_processor(processed):
    processor = Mock(spec=BlockProcessor)

    async def process_block(block):
        processed.append(block["number"])
        return BlockProcessingResult(block_number=block["number"])

    processor.process_block = AsyncMock(side_effect=process_block)
    return processor


@pytest.fixture
def checkpoint_store(checkpoints):
    manager = Mock(spec=DatabaseManager)
    manager.get_checkpoint = AsyncMock(side_effect=checkpoints.get_checkpoint)
    manager.create_checkpoint = AsyncMock(side_effect=checkpoints.create_checkpoint)
    manager.advance_checkpoint = AsyncMock(side_effect=checkpoints.advance_checkpoint)
    return CheckpointStore(manager)


@pytest.fixture
def sync_loop(mock_connector, mock_processor, checkpoint_store, chain_config):
    return SyncLoop(
        chain_connector=mock_connector,
        block_processor=mock_processor,
        checkpoint_store=checkpoint_store,
        chain_config=chain_config,
    )


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestSyncCycle:
    """Test single cycles of the sync loop"""

    async def test_end_to_end_batches(self, sync_loop, chain, checkpoints, processed):
        """Test height 10, checkpoint -1, batch 3 walks 0..10 in four cycles"""
        checkpoints_after_cycle = []
        for _ in range(4):
            await sync_loop.run_cycle()
            checkpoints_after_cycle.append(checkpoints.rows[1])

        assert checkpoints_after_cycle == [2, 5, 8, 10]
        assert processed == list(range(11))

        assert await sync_loop.run_cycle() == 0
        assert sync_loop.state == SyncState.IDLE

        chain.height = 11
        assert await sync_loop.run_cycle() == 1
        assert checkpoints.rows[1] == 11

    async def test_first_cycle_processes_block_zero(self, sync_loop, checkpoints, processed):
        assert await sync_loop.run_cycle() == 3

        assert processed == [0, 1, 2]
        assert checkpoints.rows[1] == 2
        assert sync_loop.last_processed_block == 2

    async def test_resumes_from_checkpoint(self, sync_loop, checkpoints, processed):
        checkpoints.rows[1] = 6

        await sync_loop.run_cycle()

        assert processed == [7, 8, 9]

    async def test_batch_capped_by_height(self, sync_loop, chain, checkpoints, processed):
        chain.height = 1

        assert await sync_loop.run_cycle() == 2
        assert processed == [0, 1]

    async def test_missing_block_pauses_batch(self, sync_loop, chain, checkpoints, processed):
        """Test an unavailable block is retried next cycle and never skipped"""
        chain.missing.add(1)

        assert await sync_loop.run_cycle() == 1
        assert checkpoints.rows[1] == 0

        assert await sync_loop.run_cycle() == 0
        assert checkpoints.rows[1] == 0

        chain.missing.clear()
        assert await sync_loop.run_cycle() == 3
        assert processed == [0, 1, 2, 3]
        assert checkpoints.rows[1] == 3

    async def test_block_fetch_error_pauses_batch(self, sync_loop, chain, checkpoints, processed):
        chain.failing.add(2)

        assert await sync_loop.run_cycle() == 2
        assert checkpoints.rows[1] == 1
        assert sync_loop._attempts == {2: 1}

        chain.failing.clear()
        await sync_loop.run_cycle()
        assert sync_loop._attempts == {}

    async def test_unavailable_body_pauses_batch(self, sync_loop, mock_processor, checkpoints, processed):
        async def process_block(block):
            if block["number"] == 1:
                raise BlockUnavailableError(1, "body not returned")
            processed.append(block["number"])

        mock_processor.process_block.side_effect = process_block

        assert await sync_loop.run_cycle() == 1
        assert checkpoints.rows[1] == 0
        assert processed == [0]

    async def test_stop_checked_between_blocks(self, sync_loop, mock_processor, checkpoints, processed):
        """Test a stop request lets the current block finish and checkpoint"""

        async def process_block(block):
            processed.append(block["number"])
            sync_loop._stop_event.set()

        mock_processor.process_block.side_effect = process_block

        assert await sync_loop.run_cycle() == 1
        assert processed == [0]
        assert checkpoints.rows[1] == 0

    async def test_checkpoint_regression_propagates(self, sync_loop, checkpoint_store, processed):
        checkpoint_store.advance = AsyncMock(side_effect=CheckpointRegressionError(1, 5, 0))

        with pytest.raises(CheckpointRegressionError):
            await sync_loop.run_cycle()

        assert processed == [0]


class TestSyncLoopLifecycle:
    """Test the background loop"""

    async def test_start_and_stop(self, sync_loop, checkpoints):
        await sync_loop.start()
        await wait_for(lambda: checkpoints.rows.get(1) == 10)

        await sync_loop.stop()

        assert sync_loop.state == SyncState.STOPPED
        assert sync_loop.task is None
        assert sync_loop.fatal_error is None
        assert sync_loop.last_processed_block == 10

    async def test_transient_cycle_error_does_not_stop_loop(self, sync_loop, mock_connector, chain, checkpoints):
        calls = {"n": 0}

        async def latest():
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConnectionError("node down")
            return 2

        mock_connector.get_latest_block.side_effect = latest

        await sync_loop.start()
        await wait_for(lambda: checkpoints.rows.get(1) == 2)
        await sync_loop.stop()

        assert sync_loop.fatal_error is None

    async def test_checkpoint_regression_is_fatal(self, sync_loop, checkpoint_store):
        checkpoint_store.advance = AsyncMock(side_effect=CheckpointRegressionError(1, 5, 0))

        await sync_loop.start()
        await asyncio.wait_for(sync_loop.task, timeout=2.0)

        assert isinstance(sync_loop.fatal_error, CheckpointRegressionError)
        assert sync_loop.state == SyncState.STOPPED
        assert sync_loop.is_running is False

    async def test_start_twice_is_noop(self, sync_loop):
        await sync_loop.start()
        task = sync_loop.task

        await sync_loop.start()

        assert sync_loop.task is task
        await sync_loop.stop()
