"""hycore - lifecycle agent for Hytale dedicated server worlds."""

__version__ = "0.1.0"
