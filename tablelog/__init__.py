"""
Tablelog: versioned table metadata

An append-only transaction log with optimistic commits, immutable
snapshots, time travel and additive schema evolution for tables whose
data lives in immutable files.
"""

__version__ = "0.1.0"
