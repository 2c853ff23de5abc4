"""Shared utilities: exceptions, backoff and logging."""
