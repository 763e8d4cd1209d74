"""Durable content generation and publishing job queue."""

__version__ = "0.3.0"
