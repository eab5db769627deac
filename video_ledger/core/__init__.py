"""
Core modules for Video Ledger.

This package contains pricing, event contracts, cost recording, revenue
updates, dispatching, aggregation and budget alerting.
"""
