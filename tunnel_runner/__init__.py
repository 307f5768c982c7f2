"""SSH tunnel session runner."""

__version__ = "1.0.0"
