"""
Network registry for Facilitator Hub
"""

from facilitator_hub.networks.registry import (
    EIP712Domain,
    NetworkDescriptor,
    NetworkRegistry,
    build_default_registry,
)

__all__ = [
    "EIP712Domain",
    "NetworkDescriptor",
    "NetworkRegistry",
    "build_default_registry",
]
