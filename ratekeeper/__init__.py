"""Ratekeeper: token-bucket rate limiting backed by memory or Redis."""

__version__ = "0.1.0"
