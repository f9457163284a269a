"""Prompt queue and container job orchestration for developer workflows."""

from jobdock.__about__ import __version__

__all__ = ["__version__"]
