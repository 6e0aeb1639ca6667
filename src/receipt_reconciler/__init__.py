"""Duplicate detection, reconciliation and usage quotas for receipts."""

__version__ = "0.1.0"
