"""Deduplicating bidirectional bridge between two task-management systems."""

__version__ = "1.4.0"
