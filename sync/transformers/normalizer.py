"""
Transform raw upstream payloads into normalized entities with Pydantic validation.

Plain functions: no I/O and no wall clock, so the same raw record always
produces the same result.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional
import logging

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ValidationError
from models.base import EntityType
from schemas.normalized import (
    OrderCreate,
    OrderLineCreate,
    ProductCreate,
    TransformResult,
    VariantCreate,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

# Numeric(12, 2) and 32-bit Integer columns
MAX_AMOUNT = Decimal("9999999999.99")
MAX_INT = 2**31 - 1


def _invalid(message: str, external_id: Optional[str], field_name: str, value: Any = None) -> ValidationError:
    return ValidationError(
        message,
        context={
            "external_id": external_id,
            "field_name": field_name,
            "field_value": repr(value)[:200],
        }
    )


def parse_id(value: Any, field_name: str, external_id: Optional[str] = None) -> str:
    """Upstream ids arrive as ints or strings; both become non-empty strings."""
    if value is None or isinstance(value, bool):
        raise _invalid(f"Missing {field_name}", external_id, field_name, value)
    text = str(value).strip()
    if not text:
        raise _invalid(f"Missing {field_name}", external_id, field_name, value)
    return text


def parse_optional_id(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def parse_amount(
    value: Any,
    field_name: str,
    external_id: Optional[str] = None,
    required: bool = False,
    default: Optional[Decimal] = None,
) -> Optional[Decimal]:
    """Fixed point with 2 decimals, rounded half up. Booleans are not numbers."""
    if value is None or value == "":
        if required:
            raise _invalid(f"Missing {field_name}", external_id, field_name, value)
        return default
    if isinstance(value, bool):
        raise _invalid(f"Non-numeric {field_name}", external_id, field_name, value)
    try:
        amount = Decimal(str(value).strip()).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (ArithmeticError, ValueError):
        raise _invalid(f"Non-numeric {field_name}", external_id, field_name, value)
    if not amount.is_finite():
        raise _invalid(f"Non-numeric {field_name}", external_id, field_name, value)
    if abs(amount) > MAX_AMOUNT:
        raise _invalid(f"{field_name} out of range", external_id, field_name, value)
    return amount


def parse_int(
    value: Any,
    field_name: str,
    external_id: Optional[str] = None,
    default: Optional[int] = None,
) -> Optional[int]:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise _invalid(f"Non-integer {field_name}", external_id, field_name, value)
    try:
        number = int(Decimal(str(value).strip()))
    except (ArithmeticError, ValueError):
        raise _invalid(f"Non-integer {field_name}", external_id, field_name, value)
    if abs(number) > MAX_INT:
        raise _invalid(f"{field_name} out of range", external_id, field_name, value)
    return number


def parse_datetime(value: Any, field_name: str, external_id: Optional[str] = None) -> Optional[datetime]:
    """ISO-8601 -> naive UTC. Naive input is taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            raise _invalid(f"Invalid timestamp in {field_name}", external_id, field_name, value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _items(payload: Dict[str, Any], key: str, external_id: str) -> List[Dict[str, Any]]:
    items = payload.get(key) or []
    if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
        raise _invalid(f"{key} must be a list of objects", external_id, key, items)
    return items


def _check_unique(children: List[Any], field_name: str, external_id: str) -> None:
    seen = set()
    for child in children:
        if child.external_id in seen:
            raise _invalid(
                f"Duplicate {field_name} {child.external_id}",
                external_id,
                field_name,
                child.external_id
            )
        seen.add(child.external_id)


def _build(model, record_external_id: str, **fields):
    """Construct a schema model, re-raising Pydantic errors as ValidationError"""
    try:
        return model(**fields)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(part) for part in first.get("loc", ())) or model.__name__
        raise ValidationError(
            f"{model.__name__} validation failed: {first.get('msg')}",
            context={
                "external_id": record_external_id,
                "field_name": field_name,
                "field_value": repr(first.get("input"))[:200],
            },
            original_exception=e
        )


def transform_order(payload: Dict[str, Any], tenant_id: str, source_system: str = "shopify") -> TransformResult:
    """
    Normalize an upstream order and its line items.

    Field Mapping:
    - customer.email, falling back to the top level email
    - closed_at -> fulfilled_at
    - line_items[] -> OrderLineCreate (id required, unique within the order)
    """
    external_id = parse_id(payload.get("id"), "id")
    customer = payload.get("customer") if isinstance(payload.get("customer"), dict) else {}
    shipping_address = payload.get("shipping_address")

    order = _build(
        OrderCreate,
        external_id,
        tenant_id=tenant_id,
        source_system=source_system,
        external_id=external_id,
        raw_payload=payload,
        order_number=parse_optional_id(payload.get("order_number")),
        order_name=_text(payload.get("name")),
        customer_email=_text(customer.get("email")) or _text(payload.get("email")),
        customer_first_name=_text(customer.get("first_name")),
        customer_last_name=_text(customer.get("last_name")),
        total_price=parse_amount(payload.get("total_price"), "total_price", external_id, required=True),
        subtotal_price=parse_amount(payload.get("subtotal_price"), "subtotal_price", external_id),
        total_tax=parse_amount(payload.get("total_tax"), "total_tax", external_id),
        currency=(_text(payload.get("currency")) or "USD").upper(),
        financial_status=_text(payload.get("financial_status")),
        fulfillment_status=_text(payload.get("fulfillment_status")),
        created_at=parse_datetime(payload.get("created_at"), "created_at", external_id),
        updated_at=parse_datetime(payload.get("updated_at"), "updated_at", external_id),
        processed_at=parse_datetime(payload.get("processed_at"), "processed_at", external_id),
        fulfilled_at=parse_datetime(payload.get("closed_at"), "closed_at", external_id),
        cancelled_at=parse_datetime(payload.get("cancelled_at"), "cancelled_at", external_id),
        shipping_address=shipping_address if isinstance(shipping_address, dict) else None,
        tags=payload.get("tags"),
        note=payload.get("note"),
    )

    lines = []
    for item in _items(payload, "line_items", external_id):
        line_id = parse_id(item.get("id"), "line_items.id", external_id)
        lines.append(_build(
            OrderLineCreate,
            external_id,
            tenant_id=tenant_id,
            source_system=source_system,
            external_id=line_id,
            raw_payload=item,
            order_external_id=external_id,
            product_id=parse_optional_id(item.get("product_id")),
            variant_id=parse_optional_id(item.get("variant_id")),
            title=_text(item.get("title")),
            variant_title=_text(item.get("variant_title")),
            sku=_text(item.get("sku")),
            quantity=parse_int(item.get("quantity"), "line_items.quantity", external_id, default=0),
            price=parse_amount(item.get("price"), "line_items.price", external_id, default=Decimal("0.00")),
            fulfillment_status=_text(item.get("fulfillment_status")),
            fulfillable_quantity=parse_int(
                item.get("fulfillable_quantity"), "line_items.fulfillable_quantity", external_id, default=0
            ),
        ))
    _check_unique(lines, "line_items.id", external_id)

    return TransformResult(entity_type=EntityType.ORDERS, parent=order, children=lines)


def _image_url(payload: Dict[str, Any]) -> Optional[str]:
    image = payload.get("image")
    if isinstance(image, dict) and image.get("src"):
        return _text(image["src"])
    images = payload.get("images")
    if isinstance(images, list) and images and isinstance(images[0], dict):
        return _text(images[0].get("src"))
    return None


def transform_product(payload: Dict[str, Any], tenant_id: str, source_system: str = "shopify") -> TransformResult:
    """
    Normalize an upstream product and its variants.

    inventory_count is the sum of the variants' inventory_quantity.
    """
    external_id = parse_id(payload.get("id"), "id")
    title = _text(payload.get("title"))
    if not title:
        raise _invalid("Missing title", external_id, "title", payload.get("title"))

    variants = []
    for position, item in enumerate(_items(payload, "variants", external_id), start=1):
        variant_id = parse_id(item.get("id"), "variants.id", external_id)
        variants.append(_build(
            VariantCreate,
            external_id,
            tenant_id=tenant_id,
            source_system=source_system,
            external_id=variant_id,
            raw_payload=item,
            product_external_id=external_id,
            title=_text(item.get("title")),
            sku=_text(item.get("sku")),
            price=parse_amount(item.get("price"), "variants.price", external_id, default=Decimal("0.00")),
            position=parse_int(item.get("position"), "variants.position", external_id, default=position),
            inventory_quantity=parse_int(item.get("inventory_quantity"), "variants.inventory_quantity", external_id),
            requires_shipping=parse_bool(item.get("requires_shipping")),
            taxable=parse_bool(item.get("taxable")),
            created_at=parse_datetime(item.get("created_at"), "variants.created_at", external_id),
            updated_at=parse_datetime(item.get("updated_at"), "variants.updated_at", external_id),
        ))
    _check_unique(variants, "variants.id", external_id)

    product = _build(
        ProductCreate,
        external_id,
        tenant_id=tenant_id,
        source_system=source_system,
        external_id=external_id,
        raw_payload=payload,
        title=title,
        handle=_text(payload.get("handle")),
        body_html=payload.get("body_html"),
        vendor=_text(payload.get("vendor")),
        product_type=_text(payload.get("product_type")),
        status=_text(payload.get("status")),
        tags=payload.get("tags"),
        image_url=_image_url(payload),
        inventory_count=sum(v.inventory_quantity or 0 for v in variants),
        created_at=parse_datetime(payload.get("created_at"), "created_at", external_id),
        updated_at=parse_datetime(payload.get("updated_at"), "updated_at", external_id),
        published_at=parse_datetime(payload.get("published_at"), "published_at", external_id),
    )

    return TransformResult(entity_type=EntityType.PRODUCTS, parent=product, children=variants)


TRANSFORMERS = {
    EntityType.ORDERS: transform_order,
    EntityType.PRODUCTS: transform_product,
}


def transform(raw) -> TransformResult:
    """
    Normalize a raw record.

    Args:
        raw: Object with tenant_id, source_system, entity_type and payload
            (a RawRecord row or a detached snapshot of one)

    Raises:
        ValidationError: Payload cannot be normalized; context carries the
            external id and the offending field
    """
    if not isinstance(raw.payload, dict):
        raise _invalid("Payload must be an object", getattr(raw, "external_id", None), "payload", raw.payload)
    entity_type = EntityType(raw.entity_type)
    transformer = TRANSFORMERS[entity_type]
    return transformer(raw.payload, raw.tenant_id, raw.source_system or "shopify")
