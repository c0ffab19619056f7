"""Semantic layers for captured protocol messages."""

__version__ = "0.3.0"
