"""Persistence for the generation queue."""

from genqueue.repositories import accounts, jobs, memory, resource_keys

__all__ = ["accounts", "jobs", "memory", "resource_keys"]
