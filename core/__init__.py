"""Shared helpers: command execution, document loading and archive extraction."""
