"""Publish a subset of a project's files and sync only what changed."""

__version__ = "0.1.0"
