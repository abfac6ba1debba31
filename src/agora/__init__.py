"""Agora — marketplace transaction and dispute engine."""

__version__ = "0.1.0"
