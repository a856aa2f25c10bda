"""
Chain access for Facilitator Hub
"""

from facilitator_hub.chain.client import ChainClient, ChainClientPool

__all__ = ["ChainClient", "ChainClientPool"]
