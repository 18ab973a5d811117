"""Polymarket copy-trading pipeline."""

__version__ = "0.1.0"
