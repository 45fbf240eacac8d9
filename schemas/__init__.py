"""
Pydantic schemas for data validation and serialization.

Schemas:
    normalized: Normalized order/product entities produced by the transformer
    api: API endpoint response models

Usage:
    from schemas.normalized import OrderCreate, TransformResult
    from schemas.api import ExecutionLogResponse, HealthCheckResponse

Validation:
    All schemas use Pydantic validators for:
    - Required field checking
    - Type validation and coercion
    - Tag normalization
"""

__all__ = [
    "OrderCreate",
    "OrderLineCreate",
    "ProductCreate",
    "VariantCreate",
    "TransformResult",
    "ExecutionLogResponse",
    "ExecutionLogDetailResponse",
    "HealthCheckResponse",
    "SyncTriggerResponse",
]
