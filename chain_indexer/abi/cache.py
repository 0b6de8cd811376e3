"""In-memory caches owned by the interface resolver"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from chain_indexer.abi.interface import ContractInterface

PROXY_CACHE_TTL_SECONDS = 60 * 60 * 24


class InterfaceCache:
    """Address -> ContractInterface, kept for the process lifetime"""

    def __init__(self):
        self._entries: Dict[str, ContractInterface] = {}

    def get(self, address: str) -> Optional[ContractInterface]:
        return self._entries.get(address.lower())

    def set(self, address: str, interface: ContractInterface) -> None:
        self._entries[address.lower()] = interface

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, address: str) -> bool:
        return address.lower() in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class ProxyImplementation:
    """Cached implementation lookup; implementation_address None is a negative result"""

    implementation_address: Optional[str]
    resolved_at: float


class ProxyImplementationCache:
    """
    Proxy address -> implementation lookup with a freshness TTL.

    Stale entries are evicted when read.
    """

    def __init__(self, ttl_seconds: float = PROXY_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, ProxyImplementation] = {}

    def get(self, proxy_address: str) -> Optional[ProxyImplementation]:
        """Fresh entry for the proxy, or None if absent or expired"""
        key = proxy_address.lower()
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.resolved_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return entry

    def set(self, proxy_address: str, implementation_address: Optional[str]) -> ProxyImplementation:
        entry = ProxyImplementation(
            implementation_address=implementation_address,
            resolved_at=self._clock(),
        )
        self._entries[proxy_address.lower()] = entry
        return entry

    def __len__(self) -> int:
        return len(self._entries)
