"""Bookstack bulk inventory intake."""
__version__ = "1.0.0"
