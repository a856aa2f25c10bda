"""
Facilitator Hub
Gasless x402 settlement of ERC-3009 authorizations across EVM testnets
"""

__version__ = "0.1.0"
