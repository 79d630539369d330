"""Automated engagement for social-media mentions."""

__version__ = "0.1.0"
