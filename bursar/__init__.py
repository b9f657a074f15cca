"""Bursar: student ledger and approval workflows."""

__version__ = "0.1.0"
