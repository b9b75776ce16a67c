"""Adaptive, resumable batch execution for chunked media processing."""

__version__ = "0.1.0"
