"""
Background job infrastructure.

This package provides:
- A durable, SQL-backed queue store shared by every queue
- Named queues with default retry, backoff and retention policies
- Per-queue dispatchers routing jobs to a closed table of handlers
- One-shot, interval and cron scheduling with idempotent registration
"""
