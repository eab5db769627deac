"""
Storage layer for the ledger.

Append-only cost events and one mutable revenue record per video.
"""
