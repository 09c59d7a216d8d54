"""Classified-ad monitor and listing bump bot."""

__version__ = "0.1.0"
