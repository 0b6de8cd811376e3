"""Database module for PostgreSQL interaction"""

from chain_indexer.database.checkpoint import CheckpointStore
from chain_indexer.database.manager import DatabaseManager
from chain_indexer.database.models import (
    AddressBalance,
    Block,
    Checkpoint,
    Erc20Transfer,
    EventLog,
    Transaction,
)
from chain_indexer.database.schema import get_schema_sql

__all__ = [
    "CheckpointStore",
    "DatabaseManager",
    "get_schema_sql",
    "AddressBalance",
    "Block",
    "Checkpoint",
    "Erc20Transfer",
    "EventLog",
    "Transaction",
]
