"""Reconciliation logic for leader/worker replica groups over an in-memory object store."""

__version__ = "0.1.0"