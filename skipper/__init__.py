"""Skipper - turn orchestration core for a tool-calling coding assistant."""

__version__ = "0.1.0"
