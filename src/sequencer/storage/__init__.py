"""Persistence for history, locks, and the job queue."""
