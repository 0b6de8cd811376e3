"""Event log decoding and ERC20 transfer detection"""

from chain_indexer.detectors.log_decoder import (
    TRANSFER_TOPIC,
    DecodedLog,
    Erc20TransferEvent,
    LogDecoder,
)

__all__ = ["TRANSFER_TOPIC", "DecodedLog", "Erc20TransferEvent", "LogDecoder"]
