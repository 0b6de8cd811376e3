"""EventLog backfill: re-decodes persisted logs that were stored without an event name"""

import asyncio
import sys
from dataclasses import dataclass
from typing import Dict, Optional

import structlog

from chain_indexer.abi.interface import ContractInterface
from chain_indexer.abi.repository import AbiRepository
from chain_indexer.database.manager import DatabaseManager
from chain_indexer.database.models import EventLog
from chain_indexer.detectors.log_decoder import LogDecoder

logger = structlog.get_logger()


@dataclass
class BackfillStats:
    """Outcome of one backfill run"""

    scanned: int = 0
    updated: int = 0


class EventLogBackfillService:
    """
    Re-decodes undecoded event logs from their preserved raw payload.
    
    Rows are scanned in id order with a keyset cursor, so rows that still
    cannot be decoded are visited once per run. ABIs are looked up directly in
    the repository by contract address; the ERC20 Transfer fallback of the
    decoder still applies when no ABI exists.
    """

    def __init__(
        self,
        database_manager: DatabaseManager,
        abi_repository: AbiRepository,
        log_decoder: LogDecoder,
        chain_id: int,
        batch_size: int = 200,
    ):
        """
        Initialize backfill service.
        
        Args:
            database_manager: DatabaseManager instance
            abi_repository: Source of contract ABIs
            log_decoder: Decoder applied to each raw log
            chain_id: Chain whose event logs are scanned
            batch_size: Rows fetched per page (default: 200)
        """
        self.db = database_manager
        self.abi_repository = abi_repository
        self.decoder = log_decoder
        self.chain_id = chain_id
        self.batch_size = batch_size
        self._interfaces: Dict[str, Optional[ContractInterface]] = {}
        self._logger = logger.bind(component="event_log_backfill", chain_id=chain_id)

    async def run(self) -> BackfillStats:
        """Scan all undecoded logs once and update the ones that now decode"""
        stats = BackfillStats()
        cursor = 0
        self._logger.info("backfill_started", batch_size=self.batch_size)

        while True:
            rows = await self.db.get_undecoded_event_logs(
                self.chain_id, after_id=cursor, limit=self.batch_size
            )
            if not rows:
                break

            for row in rows:
                stats.scanned += 1
                if await self._backfill_row(row):
                    stats.updated += 1

            cursor = rows[-1].id
            self._logger.debug(
                "backfill_page_completed",
                cursor=cursor,
                scanned=stats.scanned,
                updated=stats.updated,
            )
            if len(rows) < self.batch_size:
                break

        self._logger.info("backfill_completed", scanned=stats.scanned, updated=stats.updated)
        return stats

    async def _backfill_row(self, row: EventLog) -> bool:
        if not row.raw:
            return False

        decoded = self.decoder.decode(self._interface_for(row.contract_address), row.raw)
        if not decoded.decoded:
            return False

        try:
            await self.db.update_event_log_decoding(
                row.id, decoded.event_name, decoded.indexed_json(), decoded.data_json()
            )
        except Exception as e:
            self._logger.error(
                "backfill_update_failed",
                event_log_id=row.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        self._logger.debug(
            "event_log_backfilled",
            event_log_id=row.id,
            tx_hash=row.tx_hash,
            log_index=row.log_index,
            event_name=decoded.event_name,
        )
        return True

    def _interface_for(self, address: str) -> Optional[ContractInterface]:
        key = (address or "").lower()
        if key not in self._interfaces:
            abi = self.abi_repository.lookup(key) if key else None
            self._interfaces[key] = ContractInterface(abi, source=key) if abi else None
        return self._interfaces[key]


async def main() -> int:
    """Run one backfill pass using environment settings"""
    from dotenv import load_dotenv

    from chain_indexer.config import Settings
    from chain_indexer.utils.logging import setup_logging

    load_dotenv()
    settings = Settings()
    setup_logging(settings.log_level)

    db_manager = DatabaseManager(settings.database_url)
    await db_manager.connect()
    try:
        service = EventLogBackfillService(
            database_manager=db_manager,
            abi_repository=AbiRepository(settings.abi_dir),
            log_decoder=LogDecoder(),
            chain_id=settings.chain_id,
        )
        await service.run()
    finally:
        await db_manager.disconnect()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
