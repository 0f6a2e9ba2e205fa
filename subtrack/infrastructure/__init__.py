"""Persistence, retry, locking and budget infrastructure."""
