"""
Configuration for Video Ledger.

Loads the YAML file that every component is constructed from.
"""
