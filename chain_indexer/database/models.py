"""Data models for indexed chain records"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class Checkpoint:
    """Durable pointer to the last fully processed block of a chain"""

    chain_id: int
    last_processed_block: int
    updated_at: Optional[datetime] = None


@dataclass
class Block:
    """Block header, unique per (chain_id, number)"""

    chain_id: int
    number: int
    hash: str
    timestamp: datetime


@dataclass
class Transaction:
    """Transaction, unique per (chain_id, hash); value is a decimal string in wei"""

    chain_id: int
    hash: str
    block_number: int
    from_address: str
    to_address: str
    value: str


@dataclass
class EventLog:
    """Raw and decoded event log, append-only per (chain_id, tx_hash, log_index)"""

    chain_id: int
    block_number: int
    block_hash: str
    tx_hash: str
    log_index: int
    contract_address: str
    event_name: str
    event_signature: str
    raw: Dict[str, Any]
    indexed_args: Dict[str, Any] = field(default_factory=dict)
    data_args: Dict[str, Any] = field(default_factory=dict)
    processed: bool = False
    id: Optional[int] = None


@dataclass
class Erc20Transfer:
    """ERC20 Transfer derived from a log, append-only per (chain_id, tx_hash, log_index)"""

    chain_id: int
    tx_hash: str
    log_index: int
    block_number: int
    token: str
    from_address: str
    to_address: str
    value: str


@dataclass
class AddressBalance:
    """Current balance snapshot; token_address None means the native asset"""

    chain_id: int
    address: str
    balance: str
    last_updated_at: datetime
    token_address: Optional[str] = None
