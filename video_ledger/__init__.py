"""
Video Ledger.

Event-driven cost and profit ledger for a video production pipeline.
"""

__version__ = "0.1.0"
