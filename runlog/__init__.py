"""
Run Log ingestion.

Normalizes batches of transaction log events into one run record and many
entry records, links free-text tags, and enriches runs with release metadata.
"""

__version__ = "0.1.0"
