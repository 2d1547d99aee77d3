"""Orchestration core for autonomous marketing campaigns."""

__version__ = "0.1.0"
