"""Chain RPC connector with connection management, failover and circuit breaker"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, Optional
from urllib.parse import urlsplit

import structlog
from web3 import Web3
from web3.exceptions import BlockNotFound, ContractLogicError, TransactionNotFound, Web3Exception
from web3.types import BlockData, TxReceipt

from chain_indexer.config.models import ChainConfig
from chain_indexer.monitoring import metrics

logger = structlog.get_logger()

REQUEST_TIMEOUT_SECONDS = 30


def endpoint_label(rpc_url: str) -> str:
    """Scheme and host of an RPC URL; paths and query strings often carry API keys"""
    parts = urlsplit(rpc_url)
    if not parts.netloc:
        return rpc_url
    host = f"{parts.hostname}:{parts.port}" if parts.port else parts.hostname
    return f"{parts.scheme}://{host}"


class CircuitState(Enum):
    """Circuit breaker states"""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"  # one probe call allowed


@dataclass
class CircuitBreaker:
    """Tracks consecutive failures of one RPC endpoint"""

    failure_threshold: int = 5
    timeout_seconds: int = 60
    failure_count: int = 0
    state: CircuitState = CircuitState.CLOSED
    last_failure_time: float = 0.0
    endpoint: str = ""

    def _transition(self, state: CircuitState) -> None:
        previous, self.state = self.state, state
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(
            "circuit_breaker_transition",
            endpoint=self.endpoint,
            from_state=previous.value,
            to_state=state.value,
            failure_count=self.failure_count,
        )

    def record_success(self) -> None:
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()

        # A failed probe reopens immediately
        if self.state == CircuitState.HALF_OPEN or (
            self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold
        ):
            self._transition(CircuitState.OPEN)

    def can_attempt(self) -> bool:
        """Whether a call may go to this endpoint now"""
        if self.state != CircuitState.OPEN:
            return True

        if time.time() - self.last_failure_time < self.timeout_seconds:
            return False

        self._transition(CircuitState.HALF_OPEN)
        return True


class ChainConnector:
    """
    JSON-RPC client for a single EVM chain with endpoint failover.

    Web3 calls are blocking, so each one runs in a worker thread to keep the
    event loop free. Every call may fail: "not found" responses map to None
    and reverted eth_call requests map to empty bytes, everything else is
    retried and finally re-raised to the caller.
    """

    def __init__(self, config: ChainConfig):
        self.config = config
        self.chain_name = config.name
        self.chain_id = config.chain_id
        self.rpc_urls = config.rpc_urls
        self.retry_backoff_seconds = config.retry_backoff_seconds
        self.current_rpc_index = 0

        self.w3: Optional[Web3] = None
        self._circuit_breakers: Dict[str, CircuitBreaker] = {
            url: CircuitBreaker(endpoint=endpoint_label(url)) for url in self.rpc_urls
        }
        self._logger = logger.bind(component="chain_connector", chain=self.chain_name)

        self._connect(self.current_rpc_index)

    @property
    def current_endpoint(self) -> str:
        return endpoint_label(self.rpc_urls[self.current_rpc_index])

    def _connect(self, index: int) -> None:
        """Point the Web3 client at the endpoint with the given index"""
        rpc_url = self.rpc_urls[index]
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": REQUEST_TIMEOUT_SECONDS}))
        if not w3.is_connected():
            self._logger.error("rpc_connection_failed", endpoint=endpoint_label(rpc_url), index=index)
            raise ConnectionError(f"RPC endpoint {endpoint_label(rpc_url)} is not reachable")

        self.w3 = w3
        self.current_rpc_index = index
        self._logger.info("rpc_connected", endpoint=endpoint_label(rpc_url), index=index)

    def _failover_candidates(self) -> Iterator[int]:
        """Endpoint indexes after the current one, wrapping around to it last"""
        count = len(self.rpc_urls)
        for offset in range(1, count + 1):
            yield (self.current_rpc_index + offset) % count

    async def _failover(self) -> bool:
        """Switch to the next endpoint whose circuit allows a call"""
        from_endpoint = self.current_endpoint

        for index in self._failover_candidates():
            circuit_breaker = self._circuit_breakers[self.rpc_urls[index]]
            if not circuit_breaker.can_attempt():
                continue

            try:
                await asyncio.to_thread(self._connect, index)
            except (Web3Exception, OSError) as e:
                circuit_breaker.record_failure()
                self._logger.warning(
                    "rpc_failover_attempt_failed",
                    endpoint=circuit_breaker.endpoint,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            circuit_breaker.record_success()
            self._logger.info(
                "rpc_failover_success",
                from_endpoint=from_endpoint,
                to_endpoint=circuit_breaker.endpoint,
            )
            return True

        self._logger.error("rpc_failover_exhausted", endpoints=len(self.rpc_urls))
        return False

    async def _retry_with_failover(
        self, operation: str, func, *args, max_retries: int = 3, **kwargs
    ) -> Any:
        """Run a blocking Web3 call in a worker thread, retrying across endpoints"""
        last_error: Optional[BaseException] = None

        for attempt in range(max_retries):
            circuit_breaker = self._circuit_breakers[self.rpc_urls[self.current_rpc_index]]

            if not circuit_breaker.can_attempt():
                self._logger.debug(
                    "rpc_circuit_open_skipping",
                    operation=operation,
                    endpoint=circuit_breaker.endpoint,
                )
                if not await self._failover():
                    break
                continue

            started = time.time()
            try:
                result = await asyncio.to_thread(func, *args, **kwargs)
            except (Web3Exception, OSError) as e:
                last_error = e
                circuit_breaker.record_failure()
                metrics.chain_rpc_errors.labels(
                    chain=self.chain_name,
                    error_type=type(e).__name__,
                ).inc()
                self._logger.warning(
                    "rpc_operation_failed",
                    operation=operation,
                    endpoint=circuit_breaker.endpoint,
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    error=str(e),
                    error_type=type(e).__name__,
                )

                if attempt == max_retries - 1:
                    break
                if len(self.rpc_urls) > 1 and not await self._failover():
                    break
                await asyncio.sleep(self.retry_backoff_seconds * (2**attempt))
                continue

            metrics.chain_rpc_latency.labels(
                chain=self.chain_name,
                endpoint=circuit_breaker.endpoint,
                method=operation,
            ).observe(time.time() - started)
            circuit_breaker.record_success()
            return result

        self._logger.error(
            "rpc_operation_exhausted",
            operation=operation,
            max_retries=max_retries,
            error=str(last_error) if last_error else None,
        )
        if last_error is not None:
            raise last_error
        raise ConnectionError(f"{operation} failed: no RPC endpoint available")

    async def get_latest_block(self) -> int:
        """Get latest block number from chain"""
        return await self._retry_with_failover(
            "get_latest_block",
            lambda: self.w3.eth.block_number,
        )

    async def get_block(self, block_number: int, full_transactions: bool = False) -> Optional[BlockData]:
        """Get block data by block number, or None if the node does not have it yet"""

        def _get_block():
            try:
                return self.w3.eth.get_block(block_number, full_transactions=full_transactions)
            except BlockNotFound:
                return None

        return await self._retry_with_failover("get_block", _get_block)

    async def get_block_with_transactions(self, block_number: int) -> Optional[BlockData]:
        """Get block data with full transaction objects"""
        return await self.get_block(block_number, full_transactions=True)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Get transaction receipt by hash, or None if not yet available"""

        def _get_receipt():
            try:
                return self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        return await self._retry_with_failover("get_transaction_receipt", _get_receipt)

    async def get_storage_at(self, address: str, slot: int) -> bytes:
        """Read a raw storage slot of a contract"""
        checksum = Web3.to_checksum_address(address)
        return await self._retry_with_failover(
            "get_storage_at",
            lambda: bytes(self.w3.eth.get_storage_at(checksum, slot)),
        )

    async def call(self, to: str, data: bytes) -> bytes:
        """Execute eth_call against latest state; a revert yields empty bytes"""
        checksum = Web3.to_checksum_address(to)

        def _call():
            try:
                return bytes(self.w3.eth.call({"to": checksum, "data": Web3.to_hex(data)}))
            except ContractLogicError:
                return b""

        return await self._retry_with_failover("call", _call)

    async def get_code(self, address: str) -> bytes:
        """Get the runtime bytecode deployed at an address"""
        checksum = Web3.to_checksum_address(address)
        return await self._retry_with_failover(
            "get_code",
            lambda: bytes(self.w3.eth.get_code(checksum)),
        )

    async def get_balance(self, address: str) -> int:
        """Get the native asset balance of an address in wei"""
        checksum = Web3.to_checksum_address(address)
        return await self._retry_with_failover(
            "get_balance",
            lambda: int(self.w3.eth.get_balance(checksum)),
        )
