from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from promptpay_checkout.errors import VariantNotFound
from promptpay_checkout.models import ProductVariant


@dataclass(frozen=True)
class VariantInfo:
    product_id: Optional[int]
    name: str
    shade: Optional[str]
    image_url: Optional[str] = None


def get_variant(session, variant_id: int) -> ProductVariant:
    variant = session.get(ProductVariant, variant_id)
    if variant is None:
        raise VariantNotFound(f"Variant {variant_id} not found")
    return variant


def variant_price(session, variant_id: int) -> Decimal:
    return Decimal(get_variant(session, variant_id).price)


def variant_display_info(session, variant_id: int) -> VariantInfo:
    """Display name and shade for a variant, tolerating a removed catalog row."""
    variant = session.get(ProductVariant, variant_id)
    if variant is None:
        return VariantInfo(product_id=None, name=f"SKU-{variant_id}", shade=None)
    product = variant.product
    return VariantInfo(
        product_id=variant.product_id,
        name=(product.name if product else None) or variant.sku or f"SKU-{variant_id}",
        shade=variant.shade_name,
        image_url=variant.image_url or (product.primary_image_url if product else None),
    )
