"""Mapthew — issue-tracker and code-host triggered coding-agent sessions."""

__version__ = "0.1.0"
