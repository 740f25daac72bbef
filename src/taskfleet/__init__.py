"""Dependency-ordered task coordination for a fleet of CLI agents."""

__version__ = "0.1.0"
