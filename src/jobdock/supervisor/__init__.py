"""Singleton process supervisor reachable over a local unix socket."""
