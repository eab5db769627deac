"""
Event log adapters and the ingestion loop.
"""
