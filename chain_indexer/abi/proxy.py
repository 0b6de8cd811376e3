"""Proxy implementation detection strategies.

Each strategy is an async function (address, connector) -> implementation
address or None. RPC failures propagate to the caller so that "unknown" is
never confused with "not a proxy".
"""

from typing import Awaitable, Callable, Optional, Sequence, Tuple

import structlog
from web3 import Web3

from chain_indexer.chains.connector import ChainConnector
from chain_indexer.utils.encoding import address_from_word, to_bytes

logger = structlog.get_logger()

# keccak256("eip1967.proxy.implementation") - 1
EIP1967_IMPLEMENTATION_SLOT = int(
    "0x360894a13ba1a3210667c828492db98dca3e2076cc3735a920a3ca505d382bbc", 16
)

IMPLEMENTATION_GETTERS = (
    "implementation()",
    "getImplementation()",
    "proxyImplementation()",
    "implementationAddress()",
    "_implementation()",
)

# EIP-1167 runtime code prefix; the implementation address follows it
MINIMAL_PROXY_PREFIX = bytes.fromhex("363d3d373d3d3d363d73")

ProxyStrategy = Callable[[str, ChainConnector], Awaitable[Optional[str]]]


def selector(signature: str) -> bytes:
    """4-byte function selector for a signature"""
    return bytes(Web3.keccak(text=signature)[:4])


async def eip1967_slot(address: str, connector: ChainConnector) -> Optional[str]:
    """Read the EIP-1967 implementation slot"""
    word = await connector.get_storage_at(address, EIP1967_IMPLEMENTATION_SLOT)
    return address_from_word(word)


async def implementation_getter(address: str, connector: ChainConnector) -> Optional[str]:
    """Call common implementation getters in order; first non-zero address wins.

    A getter that fails on RPC does not stop the others. The last error is
    re-raised only when no getter produced an address.
    """
    last_error: Optional[Exception] = None
    for signature in IMPLEMENTATION_GETTERS:
        try:
            result = await connector.call(address, selector(signature))
        except Exception as e:
            last_error = e
            logger.debug(
                "proxy_getter_failed",
                proxy=address,
                getter=signature,
                error=str(e),
                error_type=type(e).__name__,
            )
            continue

        implementation = address_from_word(result)
        if implementation:
            return implementation

    if last_error is not None:
        raise last_error
    return None


async def minimal_proxy_bytecode(address: str, connector: ChainConnector) -> Optional[str]:
    """Match the EIP-1167 minimal proxy pattern in the runtime bytecode"""
    code = to_bytes(await connector.get_code(address))
    start = code.find(MINIMAL_PROXY_PREFIX)
    if start < 0:
        return None
    start += len(MINIMAL_PROXY_PREFIX)
    return address_from_word(code[start:start + 20]) if len(code) >= start + 20 else None


# Ordered by precedence: EIP-1967 first, bytecode match last (needs a full code fetch)
DEFAULT_PROXY_STRATEGIES: Sequence[Tuple[str, ProxyStrategy]] = (
    ("eip1967_slot", eip1967_slot),
    ("implementation_getter", implementation_getter),
    ("minimal_proxy_bytecode", minimal_proxy_bytecode),
)
