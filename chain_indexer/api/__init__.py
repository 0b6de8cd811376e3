"""Health and metrics HTTP surface"""

from chain_indexer.api.app import create_app

__all__ = ["create_app"]
