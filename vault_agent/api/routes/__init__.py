"""HTTP API route handlers."""

from . import agent, edits

__all__ = ["agent", "edits"]
