"""Resilient task-execution coordinator."""

__version__ = "0.1.0"
