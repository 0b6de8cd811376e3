"""Background services built on the indexed data"""

from chain_indexer.services.backfill import BackfillStats, EventLogBackfillService
from chain_indexer.services.balance_refresher import BalanceRefresher, BalanceRefreshItem

__all__ = [
    "BackfillStats",
    "BalanceRefresher",
    "BalanceRefreshItem",
    "EventLogBackfillService",
]
