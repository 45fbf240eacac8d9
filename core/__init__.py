"""
Core utilities and configuration for the store sync system.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Process settings and per-tenant configuration
    database: Database engine and session management
    exceptions: Custom exception hierarchy with error classification
    logging: Logging configuration and utilities
    retry: Exponential backoff shared by the client and the raw store

Usage:
    from core.config import settings, TenantConfig
    from core.database import async_session_maker
    from core.exceptions import ValidationError, UnauthorizedError
    from core.logging import setup_logging

Example:
    setup_logging()

    async with async_session_maker() as session:
        ...
"""

__all__ = [
    "settings",
    "TenantConfig",
    "load_tenant_configs",
    "async_session_maker",
    "setup_logging",
    "RetryPolicy",
    "compute_backoff",
    # Exceptions
    "SyncException",
    "RetryableError",
    "NonRetryableError",
    "FetchError",
    "APIClientError",
    "NetworkError",
    "ServerError",
    "ThrottledError",
    "RateLimitedError",
    "UnauthorizedError",
    "NotFoundError",
    "ConfigurationError",
    "TransformationError",
    "ValidationError",
    "StoreError",
    "IntegrityViolationError",
    "StepTimeoutError",
    "InvalidTransitionError",
    "RunInProgressError",
    "RunCancelledError",
]
