"""Balance refresher for native and ERC20 balances of touched addresses"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

import structlog
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from web3 import Web3

from chain_indexer.abi.proxy import selector
from chain_indexer.chains.connector import ChainConnector
from chain_indexer.database.manager import DatabaseManager, utcnow
from chain_indexer.database.models import AddressBalance
from chain_indexer.monitoring import metrics
from chain_indexer.utils.encoding import to_bytes

logger = structlog.get_logger()

BALANCE_OF_SELECTOR = selector("balanceOf(address)")


@dataclass(frozen=True)
class BalanceRefreshItem:
    """Address whose balance should be refreshed; token None means the native asset"""

    address: str
    token: Optional[str] = None


class BalanceRefresher:
    """
    Recomputes balances for a batch of touched addresses.

    The batch is deduplicated by (lowercase address, lowercase token) before
    any RPC call, so an address touched many times costs one fetch and one
    upsert per asset.

    A failed ERC20 balanceOf call is recorded as balance 0. This conflates
    "call failed" with "balance is zero" and is logged as a warning every
    time it happens. A failed native balance fetch is treated as unknown and
    leaves the stored balance untouched.
    """

    def __init__(self, chain_connector: ChainConnector, database_manager: DatabaseManager, chain_id: int):
        self.chain_connector = chain_connector
        self.db = database_manager
        self.chain_id = chain_id
        self._logger = logger.bind(component="balance_refresher", chain_id=chain_id)

    @staticmethod
    def dedupe(items: Iterable[BalanceRefreshItem]) -> List[BalanceRefreshItem]:
        """Unique (address, token) pairs in first-seen order, addresses and tokens lowercased"""
        unique = {}
        for item in items:
            if not item or not item.address:
                continue
            key = (item.address.lower(), item.token.lower() if item.token else None)
            if key not in unique:
                unique[key] = BalanceRefreshItem(address=key[0], token=key[1])
        return list(unique.values())

    async def refresh(self, items: Iterable[BalanceRefreshItem]) -> int:
        """
        Fetch and upsert balances for the deduplicated batch.
        
        Returns:
            Number of balance rows written
        """
        unique = self.dedupe(items)
        self._logger.debug("balance_refresh_started", entries=len(unique))

        refreshed = 0
        for item in unique:
            kind = "token" if item.token else "native"
            try:
                if item.token:
                    balance = await self._token_balance(item.address, item.token)
                else:
                    balance = await self._native_balance(item.address)
                if balance is None:
                    continue

                await self.db.upsert_address_balance(
                    AddressBalance(
                        chain_id=self.chain_id,
                        address=item.address,
                        token_address=item.token,
                        balance=str(balance),
                        last_updated_at=utcnow(),
                    )
                )
                refreshed += 1
                metrics.balance_refreshes.labels(kind=kind, outcome="updated").inc()
                self._logger.debug(
                    "address_balance_updated",
                    address=item.address,
                    token=item.token,
                    balance=str(balance),
                )
            except Exception as e:
                metrics.balance_refreshes.labels(kind=kind, outcome="error").inc()
                self._logger.error(
                    "balance_refresh_item_failed",
                    address=item.address,
                    token=item.token,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        return refreshed

    async def _token_balance(self, address: str, token: str) -> int:
        data = BALANCE_OF_SELECTOR + abi_encode(["address"], [Web3.to_checksum_address(address)])
        try:
            result = to_bytes(await self.chain_connector.call(token, data))
            return abi_decode(["uint256"], result[:32])[0]
        except Exception as e:
            metrics.balance_refreshes.labels(kind="token", outcome="defaulted_to_zero").inc()
            self._logger.warning(
                "erc20_balance_call_failed",
                address=address,
                token=token,
                error=str(e),
                fallback_balance=0,
            )
            return 0

    async def _native_balance(self, address: str) -> Optional[int]:
        try:
            return int(await self.chain_connector.get_balance(address))
        except Exception as e:
            metrics.balance_refreshes.labels(kind="native", outcome="unknown").inc()
            self._logger.error(
                "native_balance_fetch_failed",
                address=address,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None
