"""Database manager with connection pooling and retry logic"""

import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

import asyncpg
import structlog

from chain_indexer.database.models import (
    AddressBalance,
    Block,
    Checkpoint,
    Erc20Transfer,
    EventLog,
    Transaction,
)
from chain_indexer.database.schema import get_schema_sql

logger = structlog.get_logger()


class DatabaseManager:
    """
    Manages PostgreSQL connections and the indexer's idempotent writes.
    
    Features:
    - Connection pooling
    - Automatic retry for transient failures (3 attempts with exponential backoff)
    - Upserts keyed by natural keys so replaying a block never duplicates rows
    - Each write acquires its own connection; no transaction spans an RPC call
    """

    def __init__(self, database_url: str, min_pool_size: int = 2, max_pool_size: int = 10):
        """
        Initialize database manager.
        
        Args:
            database_url: PostgreSQL connection URL
            min_pool_size: Minimum number of connections in pool
            max_pool_size: Maximum number of connections in pool
        """
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None
        self._logger = logger.bind(component="database_manager")

    async def connect(self) -> None:
        """Establish connection pool to database"""
        try:
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=60,
            )
            self._logger.info(
                "database_connected",
                min_pool_size=self.min_pool_size,
                max_pool_size=self.max_pool_size,
            )
        except Exception as e:
            self._logger.error("database_connection_failed", error=str(e))
            raise

    async def disconnect(self) -> None:
        """Close connection pool"""
        if self.pool:
            await self.pool.close()
            self._logger.info("database_disconnected")

    async def initialize_schema(self) -> None:
        """Initialize database schema"""
        if not self.pool:
            raise RuntimeError("Database pool not initialized. Call connect() first.")

        schema_sql = get_schema_sql()
        async with self.pool.acquire() as conn:
            await conn.execute(schema_sql)
            self._logger.info("database_schema_initialized")

    async def _retry_operation(self, operation, *args, **kwargs):
        """
        Retry database operation with exponential backoff.
        
        Constraint violations are not transient and are raised immediately.
        """
        max_attempts = 3
        base_delay = 0.5  # seconds

        for attempt in range(1, max_attempts + 1):
            try:
                return await operation(*args, **kwargs)
            except asyncpg.IntegrityConstraintViolationError:
                raise
            except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                if attempt == max_attempts:
                    self._logger.error(
                        "database_operation_failed",
                        operation=operation.__name__,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise

                delay = base_delay * (2 ** (attempt - 1))
                self._logger.warning(
                    "database_operation_retry",
                    operation=operation.__name__,
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

    # Checkpoints

    async def get_checkpoint(self, chain_id: int) -> Optional[Checkpoint]:
        """Get the checkpoint row for a chain, if any"""
        if not self.pool:
            raise RuntimeError("Database pool not initialized")

        async def _get():
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(
                    "SELECT chain_id, last_processed_block, updated_at FROM checkpoints WHERE chain_id = $1",
                    chain_id,
                )

        row = await self._retry_operation(_get)
        if row is None:
            return None
        return Checkpoint(
            chain_id=row["chain_id"],
            last_processed_block=row["last_processed_block"],
            updated_at=row["updated_at"],
        )

    async def create_checkpoint(self, chain_id: int, last_processed_block: int = -1) -> Checkpoint:
        """Create the checkpoint row if absent and return the stored row"""
        if not self.pool:
            raise RuntimeError("Database pool not initialized")

        async def _create():
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO checkpoints (chain_id, last_processed_block)
                    VALUES ($1, $2)
                    ON CONFLICT (chain_id) DO NOTHING
                    """,
                    chain_id,
                    last_processed_block,
                )

        await self._retry_operation(_create)
        checkpoint = await self.get_checkpoint(chain_id)
        self._logger.info(
            "checkpoint_created",
            chain_id=chain_id,
            last_processed_block=checkpoint.last_processed_block,
        )
        return checkpoint

    async def advance_checkpoint(self, chain_id: int, block_number: int) -> bool:
        """
        Move the checkpoint forward.
        
        Returns:
            False if the stored value is already >= block_number (nothing written)
        """
        if not self.pool:
            raise RuntimeError("Database pool not initialized")

        async def _advance():
            async with self.pool.acquire() as conn:
                return await conn.fetchval(
                    """
                    UPDATE checkpoints
                    SET last_processed_block = $2, updated_at = CURRENT_TIMESTAMP
                    WHERE chain_id = $1 AND last_processed_block < $2
                    RETURNING last_processed_block
                    """,
                    chain_id,
                    block_number,
                )

        return await self._retry_operation(_advance) is not None

    # Chain records

    async def upsert_block(self, block: Block) -> None:
        """Insert or refresh a block row keyed by (chain_id, number)"""
        if not self.pool:
            raise RuntimeError("Database pool not initialized")

        async def _upsert():
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO blocks (chain_id, number, hash, timestamp)
                    VALUES ($1, $2, $3, $4)
                    ON CONFLICT (chain_id, number) DO UPDATE SET
                        hash = EXCLUDED.hash,
                        timestamp = EXCLUDED.timestamp
                    """,
                    block.chain_id,
                    block.number,
                    block.hash,
                    block.timestamp,
                )

        await self._retry_operation(_upsert)

    async def upsert_transaction(self, transaction: Transaction) -> None:
        """Insert or refresh a transaction row keyed by (chain_id, hash)"""
        if not self.pool:
            raise RuntimeError("Database pool not initialized")

        async def _upsert():
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO transactions (chain_id, hash, block_number, from_address, to_address, value)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    ON CONFLICT (chain_id, hash) DO UPDATE SET
                        block_number = EXCLUDED.block_number,
                        from_address = EXCLUDED.from_address,
                        to_address = EXCLUDED.to_address,
                        value = EXCLUDED.value
                    """,
                    transaction.chain_id,
                    transaction.hash,
                    transaction.block_number,
                    transaction.from_address,
                    transaction.to_address,
                    Decimal(transaction.value),
                )

        await self._retry_operation(_upsert)

    async def insert_event_log(self, event_log: EventLog) -> bool:
        """
        Append an event log; an existing (chain_id, tx_hash, log_index) row is kept.
        
        Returns:
            True if a new row was written
        """
        if not self.pool:
            raise RuntimeError("Database pool not initialized")

        async def _insert():
            async with self.pool.acquire() as conn:
                return await conn.fetchval(
                    """
                    INSERT INTO event_logs (
                        chain_id, block_number, block_hash, tx_hash, log_index,
                        contract_address, event_name, event_signature,
                        indexed_args, data_args, raw, processed
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10::jsonb, $11::jsonb, $12)
                    ON CONFLICT (chain_id, tx_hash, log_index) DO NOTHING
                    RETURNING id
                    """,
                    event_log.chain_id,
                    event_log.block_number,
                    event_log.block_hash,
                    event_log.tx_hash,
                    event_log.log_index,
                    event_log.contract_address,
                    event_log.event_name,
                    event_log.event_signature,
                    json.dumps(event_log.indexed_args),
                    json.dumps(event_log.data_args),
                    json.dumps(event_log.raw),
                    event_log.processed,
                )

        return await self._retry_operation(_insert) is not None

    async def insert_erc20_transfer(self, transfer: Erc20Transfer) -> bool:
        """
        Append an ERC20 transfer; an existing (chain_id, tx_hash, log_index) row is kept.
        
        Returns:
            True if a new row was written
        """
        if not self.pool:
            raise RuntimeError("Database pool not initialized")

        async def _insert():
            async with self.pool.acquire() as conn:
                return await conn.fetchval(
                    """
                    INSERT INTO erc20_transfers (
                        chain_id, tx_hash, log_index, block_number, token,
                        from_address, to_address, value
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    ON CONFLICT (chain_id, tx_hash, log_index) DO NOTHING
                    RETURNING id
                    """,
                    transfer.chain_id,
                    transfer.tx_hash,
                    transfer.log_index,
                    transfer.block_number,
                    transfer.token,
                    transfer.from_address,
                    transfer.to_address,
                    Decimal(transfer.value),
                )

        return await self._retry_operation(_insert) is not None

    async def upsert_address_balance(self, balance: AddressBalance) -> None:
        """Last-write-wins upsert of a balance snapshot keyed by (chain_id, address, token)"""
        if not self.pool:
            raise RuntimeError("Database pool not initialized")

        async def _upsert():
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO address_balances (chain_id, address, token_address, balance, last_updated_at)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (chain_id, address, (COALESCE(token_address, ''))) DO UPDATE SET
                        balance = EXCLUDED.balance,
                        last_updated_at = EXCLUDED.last_updated_at
                    """,
                    balance.chain_id,
                    balance.address,
                    balance.token_address,
                    Decimal(balance.balance),
                    balance.last_updated_at,
                )

        await self._retry_operation(_upsert)

    # Backfill

    async def get_undecoded_event_logs(
        self, chain_id: int, after_id: int = 0, limit: int = 200
    ) -> List[EventLog]:
        """
        Event logs with an empty event name, in id order after after_id.
        
        Args:
            chain_id: Chain to scan
            after_id: Keyset cursor; only rows with a larger id are returned
            limit: Maximum rows to return
        """
        if not self.pool:
            raise RuntimeError("Database pool not initialized")

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM event_logs
                WHERE chain_id = $1 AND event_name = '' AND id > $2
                ORDER BY id ASC
                LIMIT $3
                """,
                chain_id,
                after_id,
                limit,
            )

        return [
            EventLog(
                id=row["id"],
                chain_id=row["chain_id"],
                block_number=row["block_number"],
                block_hash=row["block_hash"],
                tx_hash=row["tx_hash"],
                log_index=row["log_index"],
                contract_address=row["contract_address"],
                event_name=row["event_name"],
                event_signature=row["event_signature"],
                indexed_args=_load_json(row["indexed_args"]),
                data_args=_load_json(row["data_args"]),
                raw=_load_json(row["raw"]),
                processed=row["processed"],
            )
            for row in rows
        ]

    async def update_event_log_decoding(
        self, event_log_id: int, event_name: str, indexed_args: dict, data_args: dict
    ) -> None:
        """Store a late decoding result for an existing event log row"""
        if not self.pool:
            raise RuntimeError("Database pool not initialized")

        async def _update():
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE event_logs
                    SET event_name = $2, indexed_args = $3::jsonb, data_args = $4::jsonb
                    WHERE id = $1
                    """,
                    event_log_id,
                    event_name,
                    json.dumps(indexed_args),
                    json.dumps(data_args),
                )

        await self._retry_operation(_update)

    async def get_pool_size(self) -> int:
        """Get current connection pool size"""
        if not self.pool:
            return 0
        return self.pool.get_size()

    async def get_pool_free_size(self) -> int:
        """Get number of free connections in pool"""
        if not self.pool:
            return 0
        return self.pool.get_idle_size()


def _load_json(value):
    """asyncpg returns json/jsonb columns as text unless a codec is registered"""
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return value


def utcnow() -> datetime:
    """Timezone-aware current time for TIMESTAMPTZ columns"""
    return datetime.now(timezone.utc)
