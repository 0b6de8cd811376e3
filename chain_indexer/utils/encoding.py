"""Normalization helpers for values returned by JSON-RPC providers"""

from collections.abc import Mapping
from typing import Any, List, Optional, Union

from web3 import Web3

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def to_hex(value: Union[bytes, bytearray, str, None]) -> str:
    """Lowercase 0x-prefixed hex string for bytes or hex strings"""
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def to_bytes(value: Union[bytes, bytearray, str, None]) -> bytes:
    """Raw bytes for bytes or hex strings; None becomes empty bytes"""
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    text = text[2:] if text[:2].lower() == "0x" else text
    if len(text) % 2:
        text = "0" + text
    return bytes.fromhex(text)


def to_int(value: Any, default: int = 0) -> int:
    """Parse ints, 0x-hex strings and decimal strings; unparseable values yield default"""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    try:
        text = str(value).strip()
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text)
    except (TypeError, ValueError):
        return default


def to_decimal_string(value: Any) -> str:
    """Base-10 string for a quantity given as int, hex string or decimal string"""
    return str(to_int(value, default=0))


def normalize_address(value: Union[bytes, str, None]) -> Optional[str]:
    """Checksummed address, or None for empty input"""
    if not value:
        return None
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_checksum_address(bytes(value)[-20:])
    return Web3.to_checksum_address(str(value))


def address_from_word(raw: Union[bytes, str, None]) -> Optional[str]:
    """
    Extract an address from the low 20 bytes of a 32-byte word.

    Returns None for empty responses and the zero address.
    """
    data = to_bytes(raw)
    if len(data) < 20:
        return None
    tail = data[-20:]
    if not any(tail):
        return None
    return Web3.to_checksum_address(tail)


def to_jsonable(value: Any) -> Any:
    """Recursively convert provider objects (AttributeDict, HexBytes) into JSON-safe values"""
    if isinstance(value, (bytes, bytearray)):
        return to_hex(value)
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


def topics_of(log: Mapping) -> List[str]:
    """Lowercase 0x-prefixed topics of a log"""
    return [to_hex(topic) for topic in (log.get("topics") or [])]


def log_index_of(log: Mapping) -> int:
    """Log index of a log; providers expose it as logIndex or index, default 0"""
    raw = log.get("logIndex")
    if raw is None:
        raw = log.get("index")
    return to_int(raw, default=0)
