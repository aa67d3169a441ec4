"""File-based team coordination: one lead, many independent workers."""

__version__ = "0.1.0"
