"""Blockchain event reconciliation service for hero reveals and deaths."""

__version__ = "1.1.0"
