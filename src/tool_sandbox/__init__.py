"""Run npm registry packages as sandboxed tools."""

__version__ = "0.1.0"
