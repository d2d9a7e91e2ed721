"""Persistence for candidates, batches and job profiles."""

from .memory_store import CandidateQuery, MemoryRepository, QueryResult  # noqa: F401
