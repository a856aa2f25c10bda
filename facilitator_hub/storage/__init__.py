"""
Storage layer for Facilitator Hub
"""

from facilitator_hub.storage.crypto import decrypt_private_key, encrypt_private_key
from facilitator_hub.storage.kv import KeyValueStore, MemoryStore, UpstashStore, create_store

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "UpstashStore",
    "create_store",
    "encrypt_private_key",
    "decrypt_private_key",
]
