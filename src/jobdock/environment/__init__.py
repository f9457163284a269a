"""Isolated container environments for warm workers, one-shot jobs and the service."""
