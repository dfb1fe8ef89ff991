"""Tool-calling execution engine for multi-tenant assistant backends."""

__version__ = "0.1.0"

__all__ = ["__version__"]
