"""Gist synchronization for Luna AI Translator libraries."""

__version__ = "0.1.0"
