"""Ordered, once-only execution of migrations and operations."""

__version__ = "0.1.0"
