"""Offline ingestion jobs.

See reindex.py for the full re-index of a directory of documents.
"""
