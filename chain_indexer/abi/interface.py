"""Contract interface built from an ABI, and typed decoded event arguments"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Sequence, Tuple

import structlog
from eth_abi import decode as abi_decode
from eth_utils import collapse_if_tuple, event_abi_to_log_topic
from web3 import Web3

from chain_indexer.exceptions import LogDecodeError
from chain_indexer.utils.encoding import to_bytes, to_hex

logger = structlog.get_logger()


class ValueKind(Enum):
    """Kinds of decoded ABI values"""

    ADDRESS = "address"
    NUMBER = "number"
    BOOL = "bool"
    BYTES = "bytes"
    STRING = "string"
    ARRAY = "array"


@dataclass(frozen=True)
class DecodedValue:
    """A decoded ABI value tagged with its kind; numbers and bytes are kept as strings"""

    kind: ValueKind
    value: Any

    @classmethod
    def from_abi(cls, abi_input: Mapping[str, Any], raw: Any) -> "DecodedValue":
        """Tag a value produced by eth_abi according to its ABI input definition"""
        abi_type = abi_input["type"]

        if abi_type.endswith("]"):
            element = dict(abi_input, type=abi_type[: abi_type.rindex("[")])
            return cls(ValueKind.ARRAY, tuple(cls.from_abi(element, item) for item in raw))
        if abi_type.startswith("tuple"):
            components = abi_input.get("components", [])
            return cls(
                ValueKind.ARRAY,
                tuple(cls.from_abi(component, item) for component, item in zip(components, raw)),
            )
        if abi_type == "address":
            return cls(ValueKind.ADDRESS, Web3.to_checksum_address(raw))
        if abi_type.startswith(("uint", "int", "fixed", "ufixed")):
            return cls(ValueKind.NUMBER, str(raw))
        if abi_type == "bool":
            return cls(ValueKind.BOOL, bool(raw))
        if abi_type.startswith("bytes"):
            return cls(ValueKind.BYTES, to_hex(raw))
        # jsonb cannot store U+0000
        return cls(ValueKind.STRING, str(raw).replace("\x00", ""))

    def to_json(self) -> Any:
        """JSON-safe representation: lists for arrays, bool for bool, str otherwise"""
        if self.kind == ValueKind.ARRAY:
            return [item.to_json() for item in self.value]
        if self.kind == ValueKind.BOOL:
            return self.value
        return str(self.value)


def serialize_args(args: Mapping[str, DecodedValue]) -> Dict[str, Any]:
    """Convert an ordered mapping of decoded arguments to JSON-safe values"""
    return {name: value.to_json() for name, value in args.items()}


def _is_dynamic(abi_type: str) -> bool:
    # Indexed dynamic values are stored in topics as their keccak hash
    return abi_type in ("string", "bytes") or abi_type.endswith("]") or abi_type.startswith("tuple")


class ContractInterface:
    """Events of a contract ABI, indexed by their topic0"""

    def __init__(self, abi: Sequence[Mapping[str, Any]], source: str = ""):
        """
        Build the event lookup for an ABI.

        Args:
            abi: ABI entries (functions, events, errors...)
            source: Where the ABI came from, for logging
        """
        self.abi = list(abi)
        self.source = source
        self.events: Dict[str, Mapping[str, Any]] = {}

        for entry in self.abi:
            if not isinstance(entry, Mapping) or entry.get("type") != "event" or not entry.get("name"):
                continue
            if entry.get("anonymous"):
                continue
            try:
                topic = to_hex(event_abi_to_log_topic(dict(entry)))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "abi_event_skipped",
                    source=source,
                    event=entry.get("name"),
                    error=str(e),
                )
                continue
            self.events[topic] = entry

    def has_event(self, topic0: str) -> bool:
        """Check if the ABI declares a non-anonymous event with this topic0"""
        return to_hex(topic0) in self.events

    def decode_log(
        self, topics: List[str], data: Any
    ) -> Tuple[str, Dict[str, DecodedValue], Dict[str, DecodedValue]]:
        """
        Decode a log into (event name, indexed args, data args).

        Raises:
            LogDecodeError: If the topic is unknown or topics/data do not match the event
        """
        if not topics:
            raise LogDecodeError("log has no topics")

        event = self.events.get(to_hex(topics[0]))
        if event is None:
            raise LogDecodeError(f"no event with topic {topics[0]} in {self.source or 'ABI'}")

        inputs = list(event.get("inputs", []))
        indexed_inputs = [(i, item) for i, item in enumerate(inputs) if item.get("indexed")]
        data_inputs = [(i, item) for i, item in enumerate(inputs) if not item.get("indexed")]

        if len(indexed_inputs) != len(topics) - 1:
            raise LogDecodeError(
                f"{event.get('name')} expects {len(indexed_inputs)} indexed topics, got {len(topics) - 1}"
            )

        try:
            indexed_args: Dict[str, DecodedValue] = {}
            for (position, abi_input), topic in zip(indexed_inputs, topics[1:]):
                name = abi_input.get("name") or str(position)
                if _is_dynamic(abi_input["type"]):
                    indexed_args[name] = DecodedValue(ValueKind.BYTES, to_hex(topic))
                else:
                    raw = abi_decode([collapse_if_tuple(dict(abi_input))], to_bytes(topic))[0]
                    indexed_args[name] = DecodedValue.from_abi(abi_input, raw)

            values = abi_decode(
                [collapse_if_tuple(dict(abi_input)) for _, abi_input in data_inputs],
                to_bytes(data),
            )
            data_args: Dict[str, DecodedValue] = {}
            for (position, abi_input), raw in zip(data_inputs, values):
                name = abi_input.get("name") or str(position)
                data_args[name] = DecodedValue.from_abi(abi_input, raw)
        except Exception as e:
            raise LogDecodeError(f"cannot decode {event.get('name')}: {e}") from e

        return event.get("name", ""), indexed_args, data_args
