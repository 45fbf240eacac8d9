"""
Pydantic schemas for normalized entities with validation
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.base import EntityType


class NormalizedEntityBase(BaseModel):
    """
    Fields every normalized entity carries.

    Ensures:
    - Required identifiers are present and non-empty
    - Tags are a sorted, de-duplicated list
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., min_length=1, max_length=255)
    source_system: str = Field("shopify", min_length=1, max_length=50)
    external_id: str = Field(..., min_length=1, max_length=255)
    raw_payload: Optional[Dict[str, Any]] = None

    @field_validator("external_id")
    @classmethod
    def clean_external_id(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("external_id cannot be empty after stripping")
        return v


class TaggedMixin(BaseModel):
    tags: List[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def clean_tags(cls, v):
        """Comma separated string or list -> sorted unique list"""
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, (list, tuple, set)):
            return sorted({str(t).strip() for t in v if str(t).strip()})
        return []


class OrderCreate(TaggedMixin, NormalizedEntityBase):
    order_number: Optional[str] = None
    order_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_first_name: Optional[str] = None
    customer_last_name: Optional[str] = None

    total_price: Decimal
    subtotal_price: Optional[Decimal] = None
    total_tax: Optional[Decimal] = None
    currency: str = Field("USD", min_length=3, max_length=3)

    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    fulfilled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    shipping_address: Optional[Dict[str, Any]] = None
    note: Optional[str] = None


class OrderLineCreate(NormalizedEntityBase):
    order_external_id: str = Field(..., min_length=1)
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    title: Optional[str] = None
    variant_title: Optional[str] = None
    sku: Optional[str] = None
    quantity: int = Field(0, ge=0)
    price: Decimal = Decimal("0.00")
    fulfillment_status: Optional[str] = None
    fulfillable_quantity: int = Field(0, ge=0)


class ProductCreate(TaggedMixin, NormalizedEntityBase):
    title: str = Field(..., min_length=1, max_length=500)
    handle: Optional[str] = None
    body_html: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    status: Optional[str] = None
    image_url: Optional[str] = Field(None, max_length=2048)
    inventory_count: int = 0

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    published_at: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def clean_title(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Title cannot be empty after stripping")
        return v


class VariantCreate(NormalizedEntityBase):
    product_external_id: str = Field(..., min_length=1)
    title: Optional[str] = None
    sku: Optional[str] = None
    price: Decimal = Decimal("0.00")
    position: int = 0
    inventory_quantity: Optional[int] = None
    requires_shipping: Optional[bool] = None
    taxable: Optional[bool] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


ParentEntity = Union[OrderCreate, ProductCreate]
ChildEntity = Union[OrderLineCreate, VariantCreate]


@dataclass(frozen=True)
class TransformResult:
    """Parent entity plus its complete child set, written as one unit"""

    entity_type: EntityType
    parent: ParentEntity
    children: List[ChildEntity] = field(default_factory=list)

    @property
    def external_id(self) -> str:
        return self.parent.external_id

    def as_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "parent": self.parent.model_dump(mode="json"),
            "children": [c.model_dump(mode="json") for c in self.children],
        }
