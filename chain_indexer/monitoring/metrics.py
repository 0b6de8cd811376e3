"""Prometheus metrics for monitoring indexer health and progress"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

# Sync Progress Metrics
chain_blocks_behind = Gauge(
    'chain_blocks_behind',
    'Number of blocks between the checkpoint and the chain head',
    ['chain']
)

last_processed_block = Gauge(
    'last_processed_block',
    'Highest fully processed block number',
    ['chain']
)

blocks_processed = Counter(
    'blocks_processed_total',
    'Total number of blocks processed',
    ['chain']
)

block_retries = Counter(
    'block_retries_total',
    'Number of times processing paused at a block that could not be fetched',
    ['chain']
)

block_processing_latency = Histogram(
    'block_processing_latency_seconds',
    'Time spent processing a single block',
    ['chain'],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)
)

# Chain RPC Metrics
chain_rpc_latency = Histogram(
    'chain_rpc_latency_seconds',
    'RPC call latency in seconds',
    ['chain', 'endpoint', 'method'],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0)
)

chain_rpc_errors = Counter(
    'chain_rpc_errors_total',
    'Total number of RPC errors',
    ['chain', 'error_type']
)

# Decoding Metrics
logs_processed = Counter(
    'logs_processed_total',
    'Total number of event logs persisted',
    ['chain', 'decoded']
)

erc20_transfers_detected = Counter(
    'erc20_transfers_detected_total',
    'Total number of ERC20 Transfer logs detected',
    ['chain']
)

proxy_resolutions = Counter(
    'proxy_resolutions_total',
    'Proxy implementation lookups by outcome',
    ['strategy']
)

# Balance Metrics
balance_refreshes = Counter(
    'balance_refreshes_total',
    'Balance refreshes by asset kind and outcome',
    ['kind', 'outcome']
)

# Database Metrics
db_errors = Counter(
    'db_errors_total',
    'Total number of database errors',
    ['operation', 'error_type']
)

# API Metrics
api_requests_total = Counter(
    'api_requests_total',
    'Total number of health server requests',
    ['endpoint', 'method', 'status']
)

api_request_latency = Histogram(
    'api_request_latency_seconds',
    'Health server request latency',
    ['endpoint', 'method'],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0]
)


def get_metrics() -> bytes:
    """
    Generate Prometheus metrics in text format.
    
    Returns:
        Metrics in Prometheus text format
    """
    return generate_latest()


def get_content_type() -> str:
    """
    Get the content type for Prometheus metrics.
    
    Returns:
        Content type string
    """
    return CONTENT_TYPE_LATEST
