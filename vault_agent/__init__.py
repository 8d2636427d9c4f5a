"""Tool-calling agent that explores and edits a markdown note vault."""

__version__ = "0.1.0"
