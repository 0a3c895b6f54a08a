"""Fact-check annotation task assignment and lifecycle service."""

__version__ = "0.1.0"
