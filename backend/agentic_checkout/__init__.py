"""Agentic Commerce Protocol merchant backend."""

__version__ = "0.1.0"
