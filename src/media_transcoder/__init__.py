"""Asynchronous media transcoding pipeline."""

__version__ = "0.1.0"
