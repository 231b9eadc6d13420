"""
Verification package: log models and the gap-window deduplicator.
"""
