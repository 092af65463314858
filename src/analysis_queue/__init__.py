"""Durable job queue for post-upload AI image analysis."""

__version__ = "0.1.0"
