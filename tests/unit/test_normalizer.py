import pytest
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

from core.exceptions import ValidationError
from models.base import EntityType
from schemas.normalized import OrderCreate
from sync.transformers.normalizer import (
    parse_amount,
    parse_datetime,
    parse_int,
    transform,
    transform_order,
    transform_product,
)


def raw(payload, entity_type=EntityType.ORDERS, tenant_id="acme"):
    return SimpleNamespace(
        tenant_id=tenant_id,
        source_system="shopify",
        entity_type=entity_type,
        external_id=str(payload.get("id")) if isinstance(payload, dict) else None,
        payload=payload,
    )


def test_order_mapping(order_payload):
    result = transform_order(order_payload, "acme")
    order = result.parent

    assert result.entity_type == EntityType.ORDERS
    assert order.external_id == "450789469"
    assert order.order_number == "1001"
    assert order.customer_email == "bob@example.com"
    assert order.total_price == Decimal("598.94")
    assert order.currency == "USD"
    assert order.created_at == datetime(2024, 1, 15, 15, 0, 0)
    assert order.tags == ["repeat", "vip"]
    assert [line.external_id for line in result.children] == ["466157049", "518995019"]
    assert all(line.order_external_id == "450789469" for line in result.children)


def test_order_email_falls_back_to_top_level(order_payload):
    del order_payload["customer"]

    order = transform_order(order_payload, "acme").parent

    assert order.customer_email == "fallback@example.com"


def test_closed_at_becomes_fulfilled_at(order_payload):
    order_payload["closed_at"] = "2024-01-20T12:00:00Z"

    order = transform_order(order_payload, "acme").parent

    assert order.fulfilled_at == datetime(2024, 1, 20, 12, 0, 0)


def test_transform_is_deterministic(order_payload):
    first = transform(raw(order_payload))
    second = transform(raw(order_payload))

    assert first.as_dict() == second.as_dict()


def test_transform_does_not_mutate_payload(order_payload):
    before = repr(order_payload)

    transform(raw(order_payload))

    assert repr(order_payload) == before


@pytest.mark.parametrize("value,expected", [
    ("10.005", Decimal("10.01")),
    ("10.004", Decimal("10.00")),
    (19.999, Decimal("20.00")),
    (7, Decimal("7.00")),
])
def test_amounts_round_half_up(value, expected):
    assert parse_amount(value, "total_price") == expected


@pytest.mark.parametrize("value", ["abc", True, "NaN", "inf", "-Infinity", "1e30", "sNaN"])
def test_non_numeric_amounts_rejected(value):
    with pytest.raises(ValidationError):
        parse_amount(value, "total_price", "1")


def test_missing_total_price_rejected(order_payload):
    del order_payload["total_price"]

    with pytest.raises(ValidationError) as exc_info:
        transform_order(order_payload, "acme")

    assert exc_info.value.context["field_name"] == "total_price"
    assert exc_info.value.context["external_id"] == "450789469"


def test_missing_id_rejected(order_payload):
    order_payload["id"] = None

    with pytest.raises(ValidationError) as exc_info:
        transform(raw(order_payload))

    assert exc_info.value.context["field_name"] == "id"


def test_invalid_timestamp_rejected(order_payload):
    order_payload["updated_at"] = "yesterday"

    with pytest.raises(ValidationError) as exc_info:
        transform_order(order_payload, "acme")

    assert exc_info.value.context["field_name"] == "updated_at"


def test_naive_timestamps_taken_as_utc():
    assert parse_datetime("2024-01-15T10:00:00", "created_at") == datetime(2024, 1, 15, 10, 0, 0)


def test_duplicate_line_item_ids_rejected(order_payload):
    order_payload["line_items"][1]["id"] = order_payload["line_items"][0]["id"]

    with pytest.raises(ValidationError) as exc_info:
        transform_order(order_payload, "acme")

    assert "Duplicate" in exc_info.value.message


def test_negative_quantity_rejected(order_payload):
    order_payload["line_items"][0]["quantity"] = -1

    with pytest.raises(ValidationError) as exc_info:
        transform_order(order_payload, "acme")

    assert exc_info.value.context["field_name"] == "quantity"


def test_line_items_must_be_objects(order_payload):
    order_payload["line_items"] = ["not-an-object"]

    with pytest.raises(ValidationError):
        transform_order(order_payload, "acme")


def test_product_mapping(product_payload):
    result = transform_product(product_payload, "acme")
    product = result.parent

    assert result.entity_type == EntityType.PRODUCTS
    assert product.title == "IPod Nano - 8GB"
    assert product.image_url == "https://cdn.example.com/ipod-nano.png"
    assert product.inventory_count == 30
    assert product.tags == ["Emotive", "Flash Memory", "MP3"]
    assert [v.position for v in result.children] == [1, 2]
    assert all(v.product_external_id == "632910392" for v in result.children)


def test_product_image_falls_back_to_images_list(product_payload):
    del product_payload["image"]
    product_payload["images"] = [{"src": "https://cdn.example.com/first.png"}]

    assert transform_product(product_payload, "acme").parent.image_url == "https://cdn.example.com/first.png"


def test_product_without_title_rejected(product_payload):
    product_payload["title"] = "   "

    with pytest.raises(ValidationError) as exc_info:
        transform_product(product_payload, "acme")

    assert exc_info.value.context["field_name"] == "title"


def test_product_without_variants(product_payload):
    product_payload["variants"] = []

    result = transform_product(product_payload, "acme")

    assert result.children == []
    assert result.parent.inventory_count == 0


def test_payload_must_be_an_object():
    with pytest.raises(ValidationError):
        transform(raw(["not", "an", "object"]))


def test_dispatch_by_entity_type(product_payload):
    result = transform(raw(product_payload, entity_type="products"))

    assert result.entity_type == EntityType.PRODUCTS


def test_schema_is_frozen(order_payload):
    order = transform_order(order_payload, "acme").parent

    with pytest.raises(Exception):
        order.total_price = Decimal("1.00")
    assert isinstance(order, OrderCreate)


@pytest.mark.parametrize("value", ["10000000000.00", -12345678901, "9999999999.995"])
def test_amounts_beyond_column_precision_rejected(value):
    with pytest.raises(ValidationError) as exc_info:
        parse_amount(value, "total_price", "1")

    assert "out of range" in exc_info.value.message


def test_largest_storable_amount_accepted():
    assert parse_amount("9999999999.99", "total_price") == Decimal("9999999999.99")


@pytest.mark.parametrize("value", ["Infinity", "NaN", "1e30", 2**31, "abc"])
def test_invalid_integers_rejected(value):
    with pytest.raises(ValidationError) as exc_info:
        parse_int(value, "line_items.quantity", "1")

    assert exc_info.value.context["field_name"] == "line_items.quantity"


def test_huge_total_price_is_a_validation_error(order_payload):
    order_payload["total_price"] = "1e30"

    with pytest.raises(ValidationError) as exc_info:
        transform(raw(order_payload))

    assert exc_info.value.context["external_id"] == "450789469"


def test_infinite_quantity_is_a_validation_error(order_payload):
    order_payload["line_items"][0]["quantity"] = "Infinity"

    with pytest.raises(ValidationError) as exc_info:
        transform(raw(order_payload))

    assert exc_info.value.context["field_name"] == "line_items.quantity"


def test_child_schema_errors_carry_parent_external_id(order_payload):
    order_payload["line_items"][0]["quantity"] = -1

    with pytest.raises(ValidationError) as exc_info:
        transform(raw(order_payload))

    assert exc_info.value.context["external_id"] == "450789469"
