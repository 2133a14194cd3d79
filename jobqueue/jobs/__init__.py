"""
Persistent background job queue.

This package provides:
- A durable job record with a pending/processing/completed/failed lifecycle
- Atomic claiming against a pluggable store (SQLAlchemy or in-process)
- Retry with exponential backoff and dead-lettering
- Stale job recovery and graceful draining on shutdown
"""
