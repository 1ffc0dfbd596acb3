"""Shared helpers: logging setup, address parsing and formatting."""
