"""Concierge: dashboard assistant with a streaming, human-confirmed tool loop."""

__version__ = "0.1.0"
