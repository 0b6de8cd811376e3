"""Log decoder for turning raw event logs into named, typed arguments"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import structlog
from web3 import Web3

from chain_indexer.abi.interface import ContractInterface, DecodedValue, serialize_args
from chain_indexer.exceptions import LogDecodeError
from chain_indexer.utils.encoding import log_index_of, normalize_address, to_hex, topics_of

logger = structlog.get_logger()

TRANSFER_EVENT_SIGNATURE = "Transfer(address,address,uint256)"
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text=TRANSFER_EVENT_SIGNATURE))

# Minimal ABI fragment used when no contract ABI is available
ERC20_TRANSFER_EVENT_ABI = {
    "anonymous": False,
    "type": "event",
    "name": "Transfer",
    "inputs": [
        {"indexed": True, "name": "from", "type": "address"},
        {"indexed": True, "name": "to", "type": "address"},
        {"indexed": False, "name": "value", "type": "uint256"},
    ],
}


@dataclass
class DecodedLog:
    """Decoding result; an empty event_name means the log could not be decoded"""

    event_name: str = ""
    indexed_args: Dict[str, DecodedValue] = field(default_factory=dict)
    data_args: Dict[str, DecodedValue] = field(default_factory=dict)

    @property
    def decoded(self) -> bool:
        return bool(self.event_name)

    def indexed_json(self) -> Dict[str, Any]:
        return serialize_args(self.indexed_args)

    def data_json(self) -> Dict[str, Any]:
        return serialize_args(self.data_args)


@dataclass
class Erc20TransferEvent:
    """ERC20 Transfer extracted from a log"""

    token: str
    from_address: str
    to_address: str
    value: str


class LogDecoder:
    """
    Decodes raw logs against a resolved contract interface.

    When no interface is available, or the interface cannot decode the log,
    logs whose topic0 is the ERC20 Transfer topic are decoded with a fixed
    Transfer fragment. decode() never raises.
    """

    def __init__(self):
        self._transfer_interface = ContractInterface(
            [ERC20_TRANSFER_EVENT_ABI], source="erc20_transfer_fallback"
        )

    @staticmethod
    def is_erc20_transfer(log: Mapping) -> bool:
        """Check if topic0 of a log is the ERC20 Transfer topic"""
        topics = topics_of(log)
        return bool(topics) and topics[0] == TRANSFER_TOPIC

    def decode(self, interface: Optional[ContractInterface], log: Mapping) -> DecodedLog:
        """
        Decode a log into event name plus indexed and data arguments.

        Args:
            interface: Interface resolved for the emitting contract, if any
            log: Raw log as returned by the node

        Returns:
            DecodedLog, empty when nothing could decode the log
        """
        topics = topics_of(log)
        data = log.get("data")

        if interface is not None:
            try:
                name, indexed_args, data_args = interface.decode_log(topics, data)
                return DecodedLog(name, indexed_args, data_args)
            except LogDecodeError as e:
                logger.debug(
                    "log_decode_failed",
                    address=to_hex(log.get("address")),
                    log_index=log_index_of(log),
                    error=str(e),
                )

        if topics and topics[0] == TRANSFER_TOPIC:
            try:
                name, indexed_args, data_args = self._transfer_interface.decode_log(topics, data)
                return DecodedLog(name, indexed_args, data_args)
            except LogDecodeError as e:
                logger.debug(
                    "transfer_fallback_decode_failed",
                    address=to_hex(log.get("address")),
                    log_index=log_index_of(log),
                    error=str(e),
                )

        return DecodedLog()

    def extract_transfer(self, log: Mapping) -> Optional[Erc20TransferEvent]:
        """
        ERC20 transfer carried by a log, regardless of the contract ABI.

        Returns None when the topic does not match or the log does not have the
        ERC20 shape (e.g. an ERC721 Transfer with three indexed topics).
        """
        if not self.is_erc20_transfer(log):
            return None

        try:
            _, indexed_args, data_args = self._transfer_interface.decode_log(
                topics_of(log), log.get("data")
            )
        except LogDecodeError as e:
            logger.debug(
                "transfer_shape_mismatch",
                address=to_hex(log.get("address")),
                log_index=log_index_of(log),
                error=str(e),
            )
            return None

        return Erc20TransferEvent(
            token=normalize_address(log.get("address")),
            from_address=indexed_args["from"].value,
            to_address=indexed_args["to"].value,
            value=data_args["value"].value,
        )
