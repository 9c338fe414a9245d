"""Persistence."""

from edgescan.storage.store import ScanStore, SCHEMA

__all__ = ["ScanStore", "SCHEMA"]
