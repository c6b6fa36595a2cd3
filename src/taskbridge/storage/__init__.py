"""Backing key-value stores for persisted bridge state."""

from .kv import JsonFileKVStore, KVPage, KVStore, MemoryKVStore

__all__ = ["JsonFileKVStore", "KVPage", "KVStore", "MemoryKVStore"]
