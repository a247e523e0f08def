"""Coconut tree classifier server."""

__version__ = "0.1.0"
