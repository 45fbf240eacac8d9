"""
Sync pipeline components for multi-tenant store data.

This package contains all components of the fetch -> raw -> normalized pipeline:

Modules:
    rate_limiter: Per-tenant token bucket
    client: Rate limited upstream API client with retry/backoff
    raw_store: Idempotent raw record store and transform work queue
    execution_log: Execution log recorder with status state machine
    fetcher: Fetch cycle (pages -> raw store, durable cursor)
    processor: Transform cycle (claim -> transform -> normalized store)
    orchestrator: Business-hours gate, step sequencing, run outcome
    notifications: Run summary delivery
    scheduler: APScheduler integration, one interval job per tenant

Subpackages:
    transformers: Pure raw -> normalized entity conversion
    loaders: Normalized store with idempotent upserts

Architecture:
    1. Fetch - page through the upstream API and persist every page verbatim
    2. Transform - claim unprocessed raw records in batches and normalize them
    3. Record - write one summary log entry plus one entry per step

    A failed record never fails its batch; it is retried with backoff until
    its retry budget is spent.

Usage:
    from sync.orchestrator import SyncOrchestrator
    from models.base import TriggerSource

Example:
    orchestrator = SyncOrchestrator(async_session_maker)
    summary = await orchestrator.run(tenant, TriggerSource.MANUAL)

    print(f"{summary.status}: {summary.records_success}/{summary.records_total}")
"""

__all__ = [
    "TokenBucket",
    "UpstreamClient",
    "RawStore",
    "ExecutionLog",
    "FetchCycle",
    "TransformCycle",
    "SyncOrchestrator",
    "SyncScheduler",
    "transform",
    "NormalizedStore",
]
