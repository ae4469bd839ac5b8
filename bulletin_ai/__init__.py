"""Bulletin AI: call scheduling and provider fallback for comment generation."""

__version__ = "0.1.0"
