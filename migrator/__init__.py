"""Versioned migrations read from a source driver and applied up or down to a database driver."""

__version__ = "0.1.0"