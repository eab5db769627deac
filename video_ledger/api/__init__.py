"""
HTTP surface for Video Ledger.
"""
