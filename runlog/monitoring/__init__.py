"""Logging setup and context injection."""
