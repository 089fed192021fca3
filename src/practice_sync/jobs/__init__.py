"""Durable job queue and runner for background ingestion work.

Jobs live in the same SQLite file as the data they produce. Claims are
guarded conditional updates, so any number of runner threads or processes
can sweep the queue without an external broker or in-memory locks.
"""
