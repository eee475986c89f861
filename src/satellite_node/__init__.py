"""Satellite node: authenticated satellite API and hub synchronization."""

__version__ = "1.0.0"
