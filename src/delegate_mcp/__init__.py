"""Delegate MCP: task delegation and sibling broadcasts over a session host."""

__version__ = "0.1.0"

__all__ = ["__version__"]
