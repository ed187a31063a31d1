"""Storage core for multi-device sync chains."""

__version__ = "0.1.0"
