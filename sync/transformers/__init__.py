"""Raw payload -> normalized entity transformations."""

__all__ = ["transform", "transform_order", "transform_product"]
