"""Retrieval-augmented assistant for a traffic-control contractor."""

__version__ = "0.3.0"
