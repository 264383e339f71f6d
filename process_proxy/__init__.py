"""Resilient authenticated proxy for remote process resources and their previews."""

__version__ = "1.0.0"
