"""Embedded bucket-based object store with JSON records, options and migrations."""

__version__ = "0.1.0"

__all__ = ["kv", "store", "options", "migrations"]