"""Resumable, dependency-ordered execution of feature requests through CLI agents."""

__version__ = "0.3.0"
