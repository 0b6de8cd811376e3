"""Tests for block processing"""

from unittest.mock import AsyncMock, Mock

import pytest
from eth_abi import encode
from web3 import Web3

from chain_indexer.abi import ContractInterface
from chain_indexer.abi.resolver import InterfaceResolver
from chain_indexer.chains.connector import ChainConnector
from chain_indexer.database.manager import DatabaseManager
from chain_indexer.detectors.log_decoder import TRANSFER_TOPIC, LogDecoder
from chain_indexer.exceptions import BlockUnavailableError
from chain_indexer.monitors.block_processor import BlockProcessor
from chain_indexer.services.balance_refresher import BalanceRefresher, BalanceRefreshItem

TOKEN = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
POOL = "0x" + "55" * 20
ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"
ROUTER = "0x3333333333333333333333333333333333333333"

SWAP_EVENT = {
    "anonymous": False,
    "type": "event",
    "name": "Swap",
    "inputs": [
        {"indexed": True, "name": "sender", "type": "address"},
        {"indexed": False, "name": "amountIn", "type": "uint256"},
    ],
}
SWAP_TOPIC = Web3.to_hex(Web3.keccak(text="Swap(address,uint256)"))


def address_topic(address):
    return "0x" + "00" * 12 + address[2:].lower()


def tx_hash(n):
    return "0x" + f"{n:064x}"


def transfer_log(log_index, value=10**18, sender=ALICE, recipient=BOB):
    return {
        "address": TOKEN,
        "topics": [TRANSFER_TOPIC, address_topic(sender), address_topic(recipient)],
        "data": "0x" + encode(["uint256"], [value]).hex(),
        "logIndex": log_index,
    }


def broken_swap_log(log_index):
    return {
        "address": POOL,
        "topics": [SWAP_TOPIC, address_topic(ALICE)],
        "data": "0xdead",
        "logIndex": log_index,
    }


class FakeDatabase:
    """Natural-key keyed rows mirroring the ON CONFLICT behavior of the SQL"""

    def __init__(self):
        self.blocks = {}
        self.transactions = {}
        self.event_logs = {}
        self.transfers = {}
        self.event_log_order = []

    async def upsert_block(self, block):
        self.blocks[(block.chain_id, block.number)] = block

    async def upsert_transaction(self, transaction):
        self.transactions[(transaction.chain_id, transaction.hash)] = transaction

    async def insert_event_log(self, event_log):
        key = (event_log.chain_id, event_log.tx_hash, event_log.log_index)
        if key in self.event_logs:
            return False
        self.event_logs[key] = event_log
        self.event_log_order.append(key)
        return True

    async def insert_erc20_transfer(self, transfer):
        key = (transfer.chain_id, transfer.tx_hash, transfer.log_index)
        if key in self.transfers:
            return False
        self.transfers[key] = transfer
        return True


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def mock_db(fake_db):
    manager = Mock(spec=DatabaseManager)
    manager.upsert_block = AsyncMock(side_effect=fake_db.upsert_block)
    manager.upsert_transaction = AsyncMock(side_effect=fake_db.upsert_transaction)
    manager.insert_event_log = AsyncMock(side_effect=fake_db.insert_event_log)
    manager.insert_erc20_transfer = AsyncMock(side_effect=fake_db.insert_erc20_transfer)
    return manager


@pytest.fixture
def receipts():
    """tx hash -> receipt served by the mock connector"""
    return {}


@pytest.fixture
def block_body():
    return {"number": 5, "hash": b"\x05" * 32, "timestamp": 1_700_000_000, "transactions": []}


@pytest.fixture
def mock_connector(receipts, block_body):
    connector = Mock(spec=ChainConnector)
    connector.chain_name = "ethereum"
    connector.chain_id = 1
    connector.get_block_with_transactions = AsyncMock(return_value=block_body)
    connector.get_transaction_receipt = AsyncMock(side_effect=lambda h: receipts.get(h))
    return connector


@pytest.fixture
def mock_resolver():
    resolver = Mock(spec=InterfaceResolver)
    resolver.resolve = AsyncMock(return_value=None)
    return resolver


@pytest.fixture
def mock_refresher():
    refresher = Mock(spec=BalanceRefresher)
    refresher.refresh = AsyncMock(return_value=0)
    return refresher


@pytest.fixture
def processor(mock_connector, mock_db, mock_resolver, mock_refresher):
    return BlockProcessor(
        chain_connector=mock_connector,
        database_manager=mock_db,
        interface_resolver=mock_resolver,
        log_decoder=LogDecoder(),
        balance_refresher=mock_refresher,
        chain_id=1,
    )


def add_tx(block_body, receipts, n, logs, sender=ALICE, to=ROUTER, value=12345):
    block_body["transactions"].append(
        {"hash": bytes.fromhex(tx_hash(n)[2:]), "from": sender, "to": to, "value": value}
    )
    if logs is not None:
        receipts[tx_hash(n)] = {"transactionHash": tx_hash(n), "logs": logs}


class TestBlockProcessing:
    """Test the rows derived from a block"""

    async def test_block_and_transaction_rows(self, processor, fake_db, block_body, receipts):
        add_tx(block_body, receipts, 1, [])

        result = await processor.process_block({"number": 5, "hash": b"\x05" * 32, "timestamp": 1_700_000_000})

        block = fake_db.blocks[(1, 5)]
        assert block.hash == "0x" + "05" * 32
        assert block.timestamp.year == 2023
        transaction = fake_db.transactions[(1, tx_hash(1))]
        assert transaction.block_number == 5
        assert transaction.from_address == ALICE
        assert transaction.to_address == ROUTER
        assert transaction.value == "12345"
        assert result.transactions == 1

    async def test_erc20_transfer_detected(self, processor, fake_db, block_body, receipts, mock_refresher):
        """Test a Transfer log yields a transfer row and a decoded event log"""
        add_tx(block_body, receipts, 1, [transfer_log(0)])

        result = await processor.process_block(block_body)

        transfer = fake_db.transfers[(1, tx_hash(1), 0)]
        assert transfer.token == TOKEN
        assert transfer.from_address == Web3.to_checksum_address(ALICE)
        assert transfer.to_address == Web3.to_checksum_address(BOB)
        assert transfer.value == "1000000000000000000"

        event_log = fake_db.event_logs[(1, tx_hash(1), 0)]
        assert event_log.event_name == "Transfer"
        assert event_log.event_signature == TRANSFER_TOPIC
        assert event_log.data_args == {"value": "1000000000000000000"}
        assert event_log.raw["topics"][0] == TRANSFER_TOPIC
        assert result.transfers == 1

        queued = mock_refresher.refresh.await_args.args[0]
        assert BalanceRefreshItem(address=transfer.from_address, token=TOKEN) in queued
        assert BalanceRefreshItem(address=transfer.to_address, token=TOKEN) in queued
        assert BalanceRefreshItem(address=ALICE) in queued
        assert BalanceRefreshItem(address=ROUTER) in queued

    async def test_decode_failure_does_not_block_later_logs(
        self, processor, fake_db, block_body, receipts, mock_resolver
    ):
        """Test an undecodable log is persisted empty and the next log is still processed"""
        swap_interface = ContractInterface([SWAP_EVENT])
        mock_resolver.resolve.side_effect = lambda address: swap_interface if address == POOL else None
        add_tx(block_body, receipts, 1, [broken_swap_log(0), transfer_log(1)])

        result = await processor.process_block(block_body)

        broken = fake_db.event_logs[(1, tx_hash(1), 0)]
        assert broken.event_name == ""
        assert broken.indexed_args == {}
        assert broken.data_args == {}
        assert broken.raw["data"] == "0xdead"
        assert fake_db.event_logs[(1, tx_hash(1), 1)].event_name == "Transfer"
        assert result.logs == 2
        assert result.decoded_logs == 1

    async def test_log_error_does_not_abort_transaction(
        self, processor, fake_db, block_body, receipts, mock_db
    ):
        """Test a failing write for one log leaves the remaining logs intact"""
        original = mock_db.insert_event_log.side_effect

        async def flaky_insert(event_log):
            if event_log.log_index == 0:
                raise RuntimeError("constraint check failed")
            return await original(event_log)

        mock_db.insert_event_log.side_effect = flaky_insert
        add_tx(block_body, receipts, 1, [transfer_log(0), transfer_log(1)])

        await processor.process_block(block_body)

        assert list(fake_db.event_logs) == [(1, tx_hash(1), 1)]
        assert len(fake_db.transfers) == 2

    async def test_resolver_error_does_not_abort_log(self, processor, fake_db, block_body, receipts, mock_resolver):
        mock_resolver.resolve.side_effect = ConnectionError("node down")
        add_tx(block_body, receipts, 1, [transfer_log(0)])

        await processor.process_block(block_body)

        assert fake_db.event_logs[(1, tx_hash(1), 0)].event_name == "Transfer"

    async def test_logs_processed_in_log_index_order(self, processor, fake_db, block_body, receipts):
        logs = [transfer_log(2), transfer_log(0), transfer_log(1)]
        logs[0]["index"] = logs[0].pop("logIndex")
        add_tx(block_body, receipts, 1, logs)

        await processor.process_block(block_body)

        assert [key[2] for key in fake_db.event_log_order] == [0, 1, 2]

    async def test_missing_receipt_moves_to_next_transaction(
        self, processor, fake_db, block_body, receipts, mock_refresher
    ):
        add_tx(block_body, receipts, 1, None)
        add_tx(block_body, receipts, 2, [transfer_log(0)])

        await processor.process_block(block_body)

        assert (1, tx_hash(1)) in fake_db.transactions
        assert (1, tx_hash(2), 0) in fake_db.event_logs
        assert mock_refresher.refresh.await_count == 1

    async def test_receipt_error_moves_to_next_transaction(
        self, processor, fake_db, block_body, receipts, mock_connector
    ):
        add_tx(block_body, receipts, 1, [transfer_log(0)])
        add_tx(block_body, receipts, 2, [transfer_log(0)])

        async def receipt_for(h):
            if h == tx_hash(1):
                raise TimeoutError("receipt timeout")
            return receipts[h]

        mock_connector.get_transaction_receipt.side_effect = receipt_for

        await processor.process_block(block_body)

        assert (1, tx_hash(1), 0) not in fake_db.event_logs
        assert (1, tx_hash(2), 0) in fake_db.event_logs

    async def test_refresh_runs_once_per_transaction(self, processor, block_body, receipts, mock_refresher):
        add_tx(block_body, receipts, 1, [transfer_log(0)])
        add_tx(block_body, receipts, 2, [], sender=BOB, to=None)

        await processor.process_block(block_body)

        assert mock_refresher.refresh.await_count == 2
        second_batch = mock_refresher.refresh.await_args_list[1].args[0]
        assert second_batch == [BalanceRefreshItem(address=Web3.to_checksum_address(BOB))]

    async def test_refresh_failure_is_absorbed(self, processor, fake_db, block_body, receipts, mock_refresher):
        mock_refresher.refresh.side_effect = RuntimeError("balance failure")
        add_tx(block_body, receipts, 1, [transfer_log(0)])
        add_tx(block_body, receipts, 2, [transfer_log(0)])

        result = await processor.process_block(block_body)

        assert result.transactions == 2
        assert len(fake_db.event_logs) == 2

    async def test_idempotent_replay(self, processor, fake_db, block_body, receipts):
        """Test processing the same block twice yields the same rows"""
        add_tx(block_body, receipts, 1, [transfer_log(0), broken_swap_log(1)])
        add_tx(block_body, receipts, 2, [transfer_log(0, value=7)])

        await processor.process_block(block_body)
        first = (
            dict(fake_db.blocks),
            dict(fake_db.transactions),
            dict(fake_db.event_logs),
            dict(fake_db.transfers),
        )
        await processor.process_block(block_body)

        assert len(fake_db.blocks) == 1
        assert len(fake_db.transactions) == 2
        assert fake_db.event_logs == first[2]
        assert fake_db.transfers == first[3]
        assert fake_db.transactions == first[1]

    async def test_missing_body_raises(self, processor, mock_connector, block_body):
        mock_connector.get_block_with_transactions.return_value = None

        with pytest.raises(BlockUnavailableError) as exc_info:
            await processor.process_block(block_body)

        assert exc_info.value.block_number == 5

    async def test_body_fetch_error_raises(self, processor, mock_connector, block_body):
        mock_connector.get_block_with_transactions.side_effect = ConnectionError("node down")

        with pytest.raises(BlockUnavailableError):
            await processor.process_block(block_body)

    async def test_block_write_failure_is_absorbed(self, processor, mock_db, block_body, receipts, fake_db):
        mock_db.upsert_block.side_effect = RuntimeError("db down")
        add_tx(block_body, receipts, 1, [])

        await processor.process_block(block_body)

        assert (1, tx_hash(1)) in fake_db.transactions
