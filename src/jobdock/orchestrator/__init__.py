"""Prompt routing and the singleton background worker that dispatches routed jobs."""
