"""Interface resolver: contract address -> decodable ABI, following proxies"""

from typing import Optional, Sequence, Tuple

import structlog

from chain_indexer.abi.cache import InterfaceCache, ProxyImplementationCache
from chain_indexer.abi.interface import ContractInterface
from chain_indexer.abi.proxy import DEFAULT_PROXY_STRATEGIES, ProxyStrategy
from chain_indexer.abi.repository import AbiRepository
from chain_indexer.chains.connector import ChainConnector
from chain_indexer.monitoring import metrics

logger = structlog.get_logger()


class InterfaceResolver:
    """
    Resolves the ABI used to decode logs emitted by a contract.

    Lookup order:
    1. Interface cache
    2. ABI file for the address itself
    3. Proxy implementation (strategies tried in order, first hit wins),
       then the ABI file for the implementation

    Interfaces found through a proxy are cached under both the proxy and the
    implementation address. Implementation lookups, including "not a proxy",
    are cached with a TTL so the same proxy is not probed on every log.
    """

    def __init__(
        self,
        abi_repository: AbiRepository,
        chain_connector: ChainConnector,
        interface_cache: Optional[InterfaceCache] = None,
        implementation_cache: Optional[ProxyImplementationCache] = None,
        strategies: Sequence[Tuple[str, ProxyStrategy]] = DEFAULT_PROXY_STRATEGIES,
    ):
        self.abi_repository = abi_repository
        self.chain_connector = chain_connector
        self.interface_cache = interface_cache if interface_cache is not None else InterfaceCache()
        self.implementation_cache = (
            implementation_cache if implementation_cache is not None else ProxyImplementationCache()
        )
        self.strategies = list(strategies)
        self._logger = logger.bind(component="interface_resolver")

    async def resolve(self, address: str) -> Optional[ContractInterface]:
        """Interface for a contract address, or None if no ABI can be found"""
        if not address:
            return None
        key = address.lower()

        cached = self.interface_cache.get(key)
        if cached is not None:
            return cached

        interface = self._load(key)
        if interface is not None:
            self.interface_cache.set(key, interface)
            self._logger.info("abi_loaded", address=key, events=len(interface.events))
            return interface

        implementation = await self.resolve_implementation(key)
        if not implementation:
            return None

        interface = self._load(implementation)
        if interface is None:
            self._logger.debug(
                "implementation_abi_missing",
                proxy=key,
                implementation=implementation,
            )
            return None

        self.interface_cache.set(key, interface)
        self.interface_cache.set(implementation, interface)
        self._logger.info(
            "abi_loaded_via_proxy",
            proxy=key,
            implementation=implementation,
            events=len(interface.events),
        )
        return interface

    async def resolve_implementation(self, proxy_address: str) -> Optional[str]:
        """
        Implementation address behind a proxy, or None.

        A negative result is only cached when every strategy completed; if
        any strategy failed on RPC the outcome is unknown and is retried on
        the next lookup.
        """
        key = proxy_address.lower()
        cached = self.implementation_cache.get(key)
        if cached is not None:
            return cached.implementation_address

        failed = False
        for name, strategy in self.strategies:
            try:
                implementation = await strategy(key, self.chain_connector)
            except Exception as e:
                failed = True
                self._logger.warning(
                    "proxy_strategy_failed",
                    proxy=key,
                    strategy=name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            if implementation:
                self.implementation_cache.set(key, implementation)
                metrics.proxy_resolutions.labels(strategy=name).inc()
                self._logger.info(
                    "proxy_implementation_resolved",
                    proxy=key,
                    implementation=implementation,
                    strategy=name,
                )
                return implementation

        if not failed:
            self.implementation_cache.set(key, None)
            metrics.proxy_resolutions.labels(strategy="none").inc()
        return None

    def _load(self, address: str) -> Optional[ContractInterface]:
        abi = self.abi_repository.lookup(address)
        if abi is None:
            return None
        return ContractInterface(abi, source=str(self.abi_repository.path_for(address)))
