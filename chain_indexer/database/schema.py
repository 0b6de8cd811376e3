"""PostgreSQL schema definition for the chain indexer"""


def get_schema_sql() -> str:
    """
    Returns the complete SQL schema for the indexer database.
    
    Tables:
    - checkpoints: Last fully processed block per chain
    - blocks: Block headers
    - transactions: Transactions with decimal-string values
    - event_logs: Raw logs with decoded event name and arguments
    - erc20_transfers: Transfers derived from ERC20 Transfer logs
    - address_balances: Current native and token balances
    """
    return """
-- Checkpoints table: One row per chain, monotonically advanced by the sync loop
CREATE TABLE IF NOT EXISTS checkpoints (
    chain_id INTEGER PRIMARY KEY,
    last_processed_block BIGINT NOT NULL DEFAULT -1,
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    CONSTRAINT checkpoints_block_check CHECK (last_processed_block >= -1)
);

-- Blocks table
CREATE TABLE IF NOT EXISTS blocks (
    id BIGSERIAL PRIMARY KEY,
    chain_id INTEGER NOT NULL,
    number BIGINT NOT NULL,
    hash VARCHAR(66) NOT NULL,
    timestamp TIMESTAMP WITH TIME ZONE NOT NULL,
    CONSTRAINT blocks_number_unique UNIQUE (chain_id, number)
);

-- Transactions table
CREATE TABLE IF NOT EXISTS transactions (
    id BIGSERIAL PRIMARY KEY,
    chain_id INTEGER NOT NULL,
    hash VARCHAR(66) NOT NULL,
    block_number BIGINT NOT NULL,
    from_address VARCHAR(42) NOT NULL,
    to_address VARCHAR(42) NOT NULL DEFAULT '',
    value NUMERIC(78, 0) NOT NULL DEFAULT 0,
    CONSTRAINT transactions_hash_unique UNIQUE (chain_id, hash)
);

-- Event logs table: raw log preserved for later re-decoding
CREATE TABLE IF NOT EXISTS event_logs (
    id BIGSERIAL PRIMARY KEY,
    chain_id INTEGER NOT NULL,
    block_number BIGINT NOT NULL,
    block_hash VARCHAR(66) NOT NULL,
    tx_hash VARCHAR(66) NOT NULL,
    log_index INTEGER NOT NULL,
    contract_address VARCHAR(42) NOT NULL,
    event_name VARCHAR(255) NOT NULL DEFAULT '',
    event_signature VARCHAR(66) NOT NULL DEFAULT '',
    indexed_args JSONB NOT NULL DEFAULT '{}'::jsonb,
    data_args JSONB NOT NULL DEFAULT '{}'::jsonb,
    raw JSONB NOT NULL,
    processed BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    CONSTRAINT event_logs_position_unique UNIQUE (chain_id, tx_hash, log_index)
);

-- ERC20 transfers table
CREATE TABLE IF NOT EXISTS erc20_transfers (
    id BIGSERIAL PRIMARY KEY,
    chain_id INTEGER NOT NULL,
    tx_hash VARCHAR(66) NOT NULL,
    log_index INTEGER NOT NULL,
    block_number BIGINT NOT NULL,
    token VARCHAR(42) NOT NULL,
    from_address VARCHAR(42) NOT NULL,
    to_address VARCHAR(42) NOT NULL,
    value NUMERIC(78, 0) NOT NULL,
    CONSTRAINT erc20_transfers_position_unique UNIQUE (chain_id, tx_hash, log_index)
);

-- Address balances table: current snapshot, token_address NULL is the native asset
CREATE TABLE IF NOT EXISTS address_balances (
    id BIGSERIAL PRIMARY KEY,
    chain_id INTEGER NOT NULL,
    address VARCHAR(42) NOT NULL,
    token_address VARCHAR(42),
    balance NUMERIC(78, 0) NOT NULL DEFAULT 0,
    last_updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_address_balances_owner_token
    ON address_balances(chain_id, address, (COALESCE(token_address, '')));

-- Indexes for downstream read services

CREATE INDEX IF NOT EXISTS idx_blocks_hash
    ON blocks(hash);
CREATE INDEX IF NOT EXISTS idx_transactions_block
    ON transactions(chain_id, block_number DESC);
CREATE INDEX IF NOT EXISTS idx_transactions_from
    ON transactions(from_address);
CREATE INDEX IF NOT EXISTS idx_transactions_to
    ON transactions(to_address);
CREATE INDEX IF NOT EXISTS idx_event_logs_block
    ON event_logs(chain_id, block_number DESC);
CREATE INDEX IF NOT EXISTS idx_event_logs_contract
    ON event_logs(contract_address, event_name);
CREATE INDEX IF NOT EXISTS idx_event_logs_undecoded
    ON event_logs(chain_id, id) WHERE event_name = '';
CREATE INDEX IF NOT EXISTS idx_erc20_transfers_token
    ON erc20_transfers(token, block_number DESC);
CREATE INDEX IF NOT EXISTS idx_erc20_transfers_from
    ON erc20_transfers(from_address);
CREATE INDEX IF NOT EXISTS idx_erc20_transfers_to
    ON erc20_transfers(to_address);

COMMENT ON TABLE checkpoints IS 'Last fully processed block per chain';
COMMENT ON TABLE event_logs IS 'Event logs; empty event_name marks logs awaiting backfill';
COMMENT ON TABLE address_balances IS 'Latest known balance per address and token';
COMMENT ON COLUMN event_logs.raw IS 'Untouched provider log used for re-decoding';
"""
