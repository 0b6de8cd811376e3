"""Block processor: persists a block's transactions, logs, transfers and balances"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Mapping

import structlog

from chain_indexer.abi.resolver import InterfaceResolver
from chain_indexer.chains.connector import ChainConnector
from chain_indexer.database.manager import DatabaseManager
from chain_indexer.database.models import Block, Erc20Transfer, EventLog, Transaction
from chain_indexer.detectors.log_decoder import LogDecoder
from chain_indexer.exceptions import BlockUnavailableError
from chain_indexer.monitoring import metrics
from chain_indexer.services.balance_refresher import BalanceRefresher, BalanceRefreshItem
from chain_indexer.utils.encoding import (
    log_index_of,
    normalize_address,
    to_decimal_string,
    to_hex,
    to_int,
    to_jsonable,
    topics_of,
)

logger = structlog.get_logger()


@dataclass
class BlockProcessingResult:
    """Counters for one processed block"""

    block_number: int
    transactions: int = 0
    logs: int = 0
    decoded_logs: int = 0
    transfers: int = 0
    failed_transactions: int = 0


class BlockProcessor:
    """
    Extracts and persists everything derived from one block.
    
    Transactions are handled in node order and logs in ascending log index.
    Every write is idempotent, so replaying a block after a crash is safe.
    Failures are contained: a bad log does not stop its transaction, a bad
    transaction does not stop its block.
    """

    def __init__(
        self,
        chain_connector: ChainConnector,
        database_manager: DatabaseManager,
        interface_resolver: InterfaceResolver,
        log_decoder: LogDecoder,
        balance_refresher: BalanceRefresher,
        chain_id: int,
    ):
        """
        Initialize block processor.
        
        Args:
            chain_connector: RPC client for block bodies and receipts
            database_manager: Persistence for derived rows
            interface_resolver: ABI lookup for log-emitting contracts
            log_decoder: Decoder for raw logs
            balance_refresher: Refreshes balances touched by each transaction
            chain_id: Chain id stamped on every row
        """
        self.chain_connector = chain_connector
        self.db = database_manager
        self.resolver = interface_resolver
        self.decoder = log_decoder
        self.balance_refresher = balance_refresher
        self.chain_id = chain_id
        self.chain_name = chain_connector.chain_name
        self._logger = logger.bind(component="block_processor", chain=self.chain_name)

    async def process_block(self, block: Mapping[str, Any]) -> BlockProcessingResult:
        """
        Persist a block and everything derived from its transactions.
        
        Args:
            block: Block header as returned by the node
            
        Raises:
            BlockUnavailableError: If the block body cannot be fetched
        """
        start_time = time.time()
        block_number = to_int(block.get("number"))
        block_hash = to_hex(block.get("hash"))
        result = BlockProcessingResult(block_number=block_number)

        await self._write(
            "upsert_block",
            self.db.upsert_block(
                Block(
                    chain_id=self.chain_id,
                    number=block_number,
                    hash=block_hash,
                    timestamp=datetime.fromtimestamp(to_int(block.get("timestamp")), tz=timezone.utc),
                )
            ),
        )

        try:
            full_block = await self.chain_connector.get_block_with_transactions(block_number)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise BlockUnavailableError(block_number, f"body fetch failed: {e}") from e
        if full_block is None:
            raise BlockUnavailableError(block_number, "body not returned")

        transactions = full_block.get("transactions") or []
        self._logger.debug(
            "processing_block",
            block_number=block_number,
            transaction_count=len(transactions),
        )

        for tx in transactions:
            try:
                await self._process_transaction(tx, block_number, block_hash, result)
                result.transactions += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                result.failed_transactions += 1
                self._logger.error(
                    "transaction_processing_error",
                    block_number=block_number,
                    tx_hash=to_hex(tx.get("hash")) if isinstance(tx, Mapping) else str(tx),
                    error=str(e),
                    error_type=type(e).__name__,
                )

        metrics.block_processing_latency.labels(chain=self.chain_name).observe(time.time() - start_time)
        self._logger.info(
            "block_processed",
            block_number=block_number,
            transactions=result.transactions,
            logs=result.logs,
            decoded_logs=result.decoded_logs,
            transfers=result.transfers,
            failed_transactions=result.failed_transactions,
        )
        return result

    async def _process_transaction(
        self,
        tx: Mapping[str, Any],
        block_number: int,
        block_hash: str,
        result: BlockProcessingResult,
    ) -> None:
        tx_hash = to_hex(tx.get("hash"))
        from_address = normalize_address(tx.get("from")) or ""
        to_address = normalize_address(tx.get("to")) or ""

        await self._write(
            "upsert_transaction",
            self.db.upsert_transaction(
                Transaction(
                    chain_id=self.chain_id,
                    hash=tx_hash,
                    block_number=block_number,
                    from_address=from_address,
                    to_address=to_address,
                    value=to_decimal_string(tx.get("value")),
                )
            ),
        )

        try:
            receipt = await self.chain_connector.get_transaction_receipt(tx_hash)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.error(
                "receipt_fetch_failed",
                block_number=block_number,
                tx_hash=tx_hash,
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        if receipt is None:
            self._logger.warning("receipt_missing", block_number=block_number, tx_hash=tx_hash)
            return

        refresh_queue: List[BalanceRefreshItem] = []
        for log in sorted(receipt.get("logs") or [], key=log_index_of):
            try:
                await self._process_log(log, tx_hash, block_number, block_hash, refresh_queue, result)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error(
                    "log_processing_error",
                    block_number=block_number,
                    tx_hash=tx_hash,
                    log_index=log_index_of(log),
                    error=str(e),
                    error_type=type(e).__name__,
                )

        if from_address:
            refresh_queue.append(BalanceRefreshItem(address=from_address))
        if to_address:
            refresh_queue.append(BalanceRefreshItem(address=to_address))

        try:
            await self.balance_refresher.refresh(refresh_queue)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.error(
                "balance_refresh_error",
                tx_hash=tx_hash,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _process_log(
        self,
        log: Mapping[str, Any],
        tx_hash: str,
        block_number: int,
        block_hash: str,
        refresh_queue: List[BalanceRefreshItem],
        result: BlockProcessingResult,
    ) -> None:
        log_index = log_index_of(log)
        contract_address = normalize_address(log.get("address")) or ""
        topics = topics_of(log)

        interface = None
        try:
            interface = await self.resolver.resolve(contract_address)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.warning(
                "interface_resolution_failed",
                address=contract_address,
                error=str(e),
            )

        decoded = self.decoder.decode(interface, log)

        transfer = self.decoder.extract_transfer(log)
        if transfer is not None:
            await self._write(
                "insert_erc20_transfer",
                self.db.insert_erc20_transfer(
                    Erc20Transfer(
                        chain_id=self.chain_id,
                        tx_hash=tx_hash,
                        log_index=log_index,
                        block_number=block_number,
                        token=transfer.token,
                        from_address=transfer.from_address,
                        to_address=transfer.to_address,
                        value=transfer.value,
                    )
                ),
            )
            refresh_queue.append(BalanceRefreshItem(address=transfer.from_address, token=transfer.token))
            refresh_queue.append(BalanceRefreshItem(address=transfer.to_address, token=transfer.token))
            result.transfers += 1
            metrics.erc20_transfers_detected.labels(chain=self.chain_name).inc()
            self._logger.debug(
                "erc20_transfer_detected",
                tx_hash=tx_hash,
                log_index=log_index,
                token=transfer.token,
                from_address=transfer.from_address,
                to_address=transfer.to_address,
                value=transfer.value,
            )

        await self._write(
            "insert_event_log",
            self.db.insert_event_log(
                EventLog(
                    chain_id=self.chain_id,
                    block_number=block_number,
                    block_hash=block_hash,
                    tx_hash=tx_hash,
                    log_index=log_index,
                    contract_address=contract_address,
                    event_name=decoded.event_name,
                    event_signature=topics[0] if topics else "",
                    indexed_args=decoded.indexed_json(),
                    data_args=decoded.data_json(),
                    raw=to_jsonable(log),
                )
            ),
        )

        result.logs += 1
        if decoded.decoded:
            result.decoded_logs += 1
        metrics.logs_processed.labels(
            chain=self.chain_name, decoded=str(decoded.decoded).lower()
        ).inc()

    async def _write(self, operation: str, write) -> None:
        """Await a persistence call; failures are logged and the write skipped"""
        try:
            await write
        except asyncio.CancelledError:
            raise
        except Exception as e:
            metrics.db_errors.labels(operation=operation, error_type=type(e).__name__).inc()
            self._logger.error(
                "persistence_write_failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
