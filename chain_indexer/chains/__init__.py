"""Blockchain interaction layer"""

from chain_indexer.chains.connector import ChainConnector, CircuitBreaker, CircuitState

__all__ = [
    "ChainConnector",
    "CircuitBreaker",
    "CircuitState",
]
