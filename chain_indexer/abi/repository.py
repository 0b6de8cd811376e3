"""ABI repository backed by static JSON files keyed by contract address"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

logger = structlog.get_logger()


class AbiRepository:
    """
    Read-only lookup of contract ABIs stored as <lowercase address>.json.

    A file may hold a bare ABI array or a compiler artifact with an "abi" field.
    """

    def __init__(self, abi_dir: Union[str, Path]):
        self.abi_dir = Path(abi_dir)
        self._logger = logger.bind(component="abi_repository", abi_dir=str(self.abi_dir))

    def path_for(self, address: str) -> Path:
        """File path where the ABI of an address is expected"""
        return self.abi_dir / f"{address.lower()}.json"

    def has(self, address: str) -> bool:
        """Check if an ABI file exists for the address"""
        return bool(address) and self.path_for(address).is_file()

    def lookup(self, address: str) -> Optional[List[Dict[str, Any]]]:
        """
        Load the ABI for an address.

        Returns:
            The ABI entries, or None if there is no file or it holds no ABI array
        """
        if not address:
            return None

        path = self.path_for(address)
        if not path.is_file():
            return None

        try:
            with path.open("r", encoding="utf-8") as f:
                parsed = json.load(f)
        except (OSError, ValueError) as e:
            self._logger.error("abi_file_unreadable", path=str(path), error=str(e))
            return None

        if isinstance(parsed, list):
            return parsed
        if isinstance(parsed, dict) and isinstance(parsed.get("abi"), list):
            return parsed["abi"]

        self._logger.error("abi_file_invalid", path=str(path))
        return None
