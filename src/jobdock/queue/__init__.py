"""Durable JSON-file prompt queue."""
