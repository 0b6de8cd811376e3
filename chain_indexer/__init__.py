"""Resumable EVM chain indexer: blocks, transactions, event logs, ERC20 transfers and balances"""

__version__ = "1.0.0"
