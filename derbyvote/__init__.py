"""Award voting for pinewood derby events."""

__version__ = "0.1.0"
