"""ABI lookup, proxy resolution and contract interfaces"""

from chain_indexer.abi.cache import InterfaceCache, ProxyImplementation, ProxyImplementationCache
from chain_indexer.abi.interface import ContractInterface, DecodedValue, ValueKind, serialize_args
from chain_indexer.abi.repository import AbiRepository
from chain_indexer.abi.resolver import InterfaceResolver

__all__ = [
    "AbiRepository",
    "ContractInterface",
    "DecodedValue",
    "InterfaceCache",
    "InterfaceResolver",
    "ProxyImplementation",
    "ProxyImplementationCache",
    "ValueKind",
    "serialize_args",
]
